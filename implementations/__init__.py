from implementations.exceptions import (
    BackendUnavailableError,
    ConfigurationError,
    DuplicateLockImplementorError,
    LockAcquisitionError,
    LockError,
    UnknownLockImplementorError,
    UnrecoverableMutexError,
)
from implementations.lock import LockEngine, LockInformation, LockStatus
from implementations.config import ConfigWarning, ConnectionSettings
from implementations.backend import PostgreSQLLockBackend
from implementations.cache import RedisLockBackend
from implementations.flock import FlockLockBackend
from implementations.mutex import Mutex, MutexFactory
