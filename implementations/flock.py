import contextlib
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Union
from urllib.parse import quote

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None

from interfaces import AbstractLockBackend
from implementations.exceptions import BackendUnavailableError
from implementations.lock import LockInformation


class FlockLockBackend(AbstractLockBackend):
    """
    Lock backend using `flock` on one file per lock name inside `directory`.

    The kernel drops the lock when its file descriptor is closed, including when the
    holding process dies. Lock files are left in place after release: removing them
    would race with a process that has just opened the same path.
    """

    def __init__(self, directory: Union[str, Path]):
        if fcntl is None:
            raise RuntimeError("flock locks require a POSIX platform.")
        self._directory = Path(directory)
        self._files: Dict[str, int] = {}
        self._files_lock = threading.RLock()

    @staticmethod
    def is_supported() -> bool:
        return fcntl is not None

    def _path(self, name: str) -> Path:
        return self._directory / f"{quote(name, safe='')}.lock"

    def _open(self, name: str) -> int:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            return os.open(str(self._path(name)), os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise BackendUnavailableError(name, str(e)) from e

    @staticmethod
    def _try_flock(fd: int, name: str) -> bool:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        except OSError as e:
            if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
                return False
            raise BackendUnavailableError(name, str(e)) from e
        return True

    def attempt_grant(self, name: str) -> bool:
        with self._files_lock:
            if name in self._files:
                return True
            fd = self._open(name)
            try:
                if not self._try_flock(fd, name):
                    os.close(fd)
                    return False
            except BackendUnavailableError:
                os.close(fd)
                raise
            self._files[name] = fd

        payload = LockInformation().serialize().encode("utf-8")
        try:
            os.ftruncate(fd, 0)
            os.pwrite(fd, payload, 0)
        except OSError as e:
            # Metadata is informational, the flock is what holds the lock.
            logging.debug(f"Could not write lock information for {name}: {e}")
        return True

    def release(self, name: str) -> bool:
        with self._files_lock:
            fd = self._files.pop(name, None)
        if fd is None:
            return True
        with contextlib.suppress(OSError):
            fcntl.flock(fd, fcntl.LOCK_UN)
        with contextlib.suppress(OSError):
            os.close(fd)
        return True

    def query(self, name: str) -> bool:
        with self._files_lock:
            if name in self._files:
                return True
        if not self._path(name).exists():
            return False

        # Probe with a shared lock, which is dropped right away and never blocks readers.
        fd = self._open(name)
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        except OSError as e:
            if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK):
                return True
            raise BackendUnavailableError(name, str(e)) from e
        finally:
            os.close(fd)
        return False

    def close(self) -> None:
        with self._files_lock:
            names = list(self._files)
        for name in names:
            self.release(name)
