from abc import ABC, abstractmethod
from typing import Optional


class AbstractLock(ABC):
    """
    Abstract base class for a named, distributed lock. Callers only ever talk to this interface,
    the storage that enforces mutual exclusion is hidden behind it.
    """

    @abstractmethod
    def acquire_lock(self, name: str, timeout: Optional[int] = None) -> bool:
        """
        Acquire the lock `name`.

        Args:
            name (str): The lock name.
            timeout (Optional[int]): None to block until the lock is obtained,
                0 to try exactly once, or a number of milliseconds to keep trying.

        Returns:
            bool: True if the lock is held by this instance after the call.
        """
        pass

    @abstractmethod
    def release_lock(self, name: str) -> bool:
        """
        Release the lock `name`. Releasing a lock that is not held succeeds.
        """
        pass

    @abstractmethod
    def is_locked(self, name: str) -> bool:
        """
        Check if the lock is held by any process.
        """
        pass

    @abstractmethod
    def clear_lock(self, name: str) -> bool:
        """
        Forget the lock locally without releasing it in the backend.
        Do not use this unless you are recovering from a desynchronized state.
        """
        pass
