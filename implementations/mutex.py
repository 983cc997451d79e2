import logging
import threading
from typing import Dict, Optional, Tuple

from interfaces import AbstractLock
from implementations.exceptions import (
    DuplicateLockImplementorError,
    LockAcquisitionError,
    UnknownLockImplementorError,
    UnrecoverableMutexError,
)
from implementations.lock import LockStatus


class Mutex:
    """
    A single named lock with counted reentrancy: every acquire_lock must be matched by a
    release_lock, and only the last release frees the lock in the backend.

    Attributes:
        name (str): The lock name.
        _lock (AbstractLock): The engine the lock is acquired through.
        _counter (int): Number of acquisitions not yet released.
        _counter_lock (threading.RLock): Guards the counter, a Mutex may be shared between threads.
    """

    def __init__(self, name: str, lock: AbstractLock):
        self.name = name
        self._lock = lock
        self._counter = 0
        self._counter_lock = threading.RLock()

    def acquire_lock(self, timeout: Optional[int] = None) -> bool:
        """
        Args:
            timeout (Optional[int]): None to block, 0 to try once, or milliseconds to wait.

        Returns:
            bool: True if the mutex is held after the call.
        """
        with self._counter_lock:
            if self._counter > 0 or self._lock.acquire_lock(self.name, timeout):
                self._counter += 1
                return True
            return False

    def release_lock(self) -> bool:
        with self._counter_lock:
            if self._counter == 0:
                return False
            if self._counter > 1:
                self._counter -= 1
                return True
            if not self._lock.release_lock(self.name):
                return False
            self._counter = 0
            return True

    def is_acquired(self) -> bool:
        """Whether this mutex holds the lock."""
        with self._counter_lock:
            return self._counter > 0

    def is_locked(self) -> bool:
        """Whether anyone holds the lock."""
        return self._lock.is_locked(self.name)

    def close(self) -> None:
        """
        Releases every pending acquisition.

        Raises:
            UnrecoverableMutexError: If the backend refuses to release the lock.
        """
        with self._counter_lock:
            while self.is_acquired():
                if not self.release_lock():
                    raise UnrecoverableMutexError(self.name)

    def __enter__(self) -> "Mutex":
        if not self.acquire_lock():
            raise LockAcquisitionError(self.name, LockStatus.BACKEND_UNAVAILABLE)
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.release_lock()


class MutexFactory:
    """
    Hands out Mutex instances per lock name, over one or more registered lock engines.
    The same (implementor, name) pair always yields the same Mutex, so its counter is shared.
    """

    def __init__(self, default_implementor: str, lock: AbstractLock):
        self._implementors: Dict[str, AbstractLock] = {}
        self._mutexes: Dict[Tuple[str, str], Mutex] = {}
        self._mutexes_lock = threading.Lock()
        self.register_lock_implementor(default_implementor, lock)
        self._default_implementor = default_implementor

    def register_lock_implementor(self, implementor: str, lock: AbstractLock) -> None:
        if implementor in self._implementors:
            raise DuplicateLockImplementorError(implementor)
        self._implementors[implementor] = lock

    def set_default_lock_implementor(self, implementor: str) -> None:
        if implementor not in self._implementors:
            raise UnknownLockImplementorError(implementor)
        self._default_implementor = implementor

    def get_default_lock_implementor(self) -> str:
        return self._default_implementor

    def get(self, name: str, implementor: Optional[str] = None) -> Mutex:
        implementor = implementor or self._default_implementor
        if implementor not in self._implementors:
            raise UnknownLockImplementorError(implementor)

        key = (implementor, name)
        with self._mutexes_lock:
            if key not in self._mutexes:
                logging.debug(f"Creating mutex {name} on {implementor}")
                self._mutexes[key] = Mutex(name, self._implementors[implementor])
            return self._mutexes[key]
