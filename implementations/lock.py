import json
import logging
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional, Set, Iterator

from interfaces import AbstractLock, AbstractLockBackend, AbstractLockExpiration
from implementations.exceptions import BackendUnavailableError, LockAcquisitionError


class LockStatus(Enum):
    GRANTED = "granted"
    CONTENDED = "contended"
    BACKEND_UNAVAILABLE = "backend unavailable"


@dataclass
class LockInformation:
    """Diagnostic metadata stored alongside a lock by backends that persist a value."""

    pid: int = field(default_factory=os.getpid)
    hostname: str = field(default_factory=socket.gethostname)
    acquired_at: float = field(default_factory=time.time)
    token: str = field(default_factory=lambda: uuid.uuid4().hex)

    def serialize(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


class LockEngine(AbstractLock):
    """
    Generic locking protocol on top of an AbstractLockBackend. The engine owns the
    acquisition loop (blocking, non-blocking, bounded wait) and a registry of the
    names this instance believes it holds. Mutual exclusion itself is delegated to
    the backend.

    The registry is a presence set: acquiring a held name again returns True without
    contacting the backend, and a single release frees it whatever the number of
    acquisitions. Use `implementations.mutex.Mutex` for counted reentrancy.

    Attributes:
        _backend (AbstractLockBackend): The backend enforcing mutual exclusion.
        _poll_interval (float): Seconds slept between two grant attempts.
        _locks (Set[str]): Names currently held by this instance.
        _registry_lock (threading.RLock): Serializes registry access and grant attempts.
    """

    def __init__(self, backend: AbstractLockBackend, poll_interval: float = 0.001):
        """
        Args:
            backend (AbstractLockBackend): The backend enforcing mutual exclusion.
            poll_interval (float): Seconds slept between two grant attempts. Defaults to 1 millisecond.
        """
        if poll_interval < 0:
            raise ValueError("poll_interval must be positive or zero.")
        self._backend = backend
        self._poll_interval = poll_interval
        self._locks: Set[str] = set()
        self._registry_lock = threading.RLock()

    @property
    def backend(self) -> AbstractLockBackend:
        return self._backend

    @property
    def held_locks(self) -> Set[str]:
        with self._registry_lock:
            return set(self._locks)

    def try_acquire_lock(self, name: str, timeout: Optional[int] = None) -> LockStatus:
        """
        Acquires `name`, telling apart contention from an unreachable backend.

        Args:
            name (str): The lock name.
            timeout (Optional[int]): None blocks until the lock is granted, 0 makes a single
                attempt, a positive value keeps trying for that many milliseconds.

        Returns:
            LockStatus: GRANTED, CONTENDED once the timeout is exhausted, or BACKEND_UNAVAILABLE
                as soon as the backend raises.
        """
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be None, 0 or a positive number of milliseconds.")

        start = time.monotonic()
        while True:
            with self._registry_lock:
                if name in self._locks:
                    logging.debug(f"Lock {name} already held by this instance")
                    return LockStatus.GRANTED
                try:
                    granted = self._backend.attempt_grant(name)
                except BackendUnavailableError as e:
                    logging.warning(f"Could not acquire lock {name}: {e.reason}")
                    return LockStatus.BACKEND_UNAVAILABLE
                if granted:
                    self._locks.add(name)
                    logging.info(f"Acquired lock {name}")
                    return LockStatus.GRANTED

            logging.debug(f"Lock {name} is held elsewhere")
            if timeout is not None and (timeout == 0 or (time.monotonic() - start) * 1000 >= timeout):
                return self._give_up(name)
            time.sleep(self._poll_interval)

    def _give_up(self, name: str) -> LockStatus:
        with self._registry_lock:
            # Another thread of this instance may have won it while we slept.
            if name not in self._locks:
                self._backend.abandon(name)
        return LockStatus.CONTENDED

    def acquire_lock(self, name: str, timeout: Optional[int] = None) -> bool:
        return self.try_acquire_lock(name, timeout) is LockStatus.GRANTED

    def release_lock(self, name: str) -> bool:
        with self._registry_lock:
            try:
                released = self._backend.release(name)
            except BackendUnavailableError as e:
                logging.warning(f"Could not release lock {name}: {e.reason}")
                return False
            if released:
                self._locks.discard(name)
                logging.info(f"Released lock {name}")
            return released

    def is_locked(self, name: str) -> bool:
        try:
            return self._backend.query(name)
        except BackendUnavailableError as e:
            logging.warning(f"Could not query lock {name}: {e.reason}")
            return False

    def clear_lock(self, name: str) -> bool:
        with self._registry_lock:
            if name not in self._locks:
                return False
            self._locks.discard(name)
            self._backend.forget(name)
        logging.warning(f"Cleared lock {name} without releasing it")
        return True

    def set_expiration(self, expiration: int) -> None:
        if not isinstance(self._backend, AbstractLockExpiration):
            raise TypeError(f"{type(self._backend).__name__} does not support expiration.")
        self._backend.set_expiration(expiration)

    @contextmanager
    def lock(self, name: str, timeout: Optional[int] = None) -> Iterator[None]:
        """
        Holds `name` for the duration of the block.

        Raises:
            LockAcquisitionError: If the lock could not be acquired.
        """
        status = self.try_acquire_lock(name, timeout)
        if status is not LockStatus.GRANTED:
            raise LockAcquisitionError(name, status)
        try:
            yield
        finally:
            self.release_lock(name)

    def close(self) -> None:
        """Releases every lock held by this instance, then closes the backend."""
        try:
            for name in self.held_locks:
                if not self.release_lock(name):
                    logging.error(f"Could not release lock {name} while closing")
        finally:
            with self._registry_lock:
                self._locks.clear()
            self._backend.close()

    def __enter__(self) -> "LockEngine":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
