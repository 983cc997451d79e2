from interfaces.backend import AbstractLockBackend
from interfaces.expiration import AbstractLockExpiration
from interfaces.lock import AbstractLock
