from abc import ABC, abstractmethod


class AbstractLockBackend(ABC):
    """
    Abstract class for the storage system that holds the authoritative lock state.
    Concrete implementations translate the three lock primitives into the native
    calls of one backend (PostgreSQL advisory locks, Redis keys, flock files, etc.).

    Every method must return immediately: waiting and retrying belong to the engine.
    """

    @abstractmethod
    def attempt_grant(self, name: str) -> bool:
        """
        Makes a single, non-blocking attempt to establish the lock record for `name`.

        Args:
            name (str): The lock name.

        Returns:
            bool: True if the lock was granted, False if it is held by someone else.

        Raises:
            BackendUnavailableError: If the backend could not be reached.
        """
        pass

    @abstractmethod
    def release(self, name: str) -> bool:
        """
        Removes the lock record for `name`. A record that is already absent counts as released.

        Args:
            name (str): The lock name.

        Returns:
            bool: True if the record is gone after the call.

        Raises:
            BackendUnavailableError: If the backend could not be reached.
        """
        pass

    @abstractmethod
    def query(self, name: str) -> bool:
        """
        Reports whether the backend currently considers `name` locked, without side effects on the lock.

        Raises:
            BackendUnavailableError: If the backend could not be reached.
        """
        pass

    def forget(self, name: str) -> None:
        """
        Drops any instance-local state kept for `name` without touching the backend.
        Backends with nothing to forget keep this no-op.
        """
        pass

    def abandon(self, name: str) -> None:
        """
        Called once the engine stops trying to acquire `name` without success.
        Backends that opened resources for the attempts drop them here.
        """
        pass

    def close(self) -> None:
        """Releases the resources (connections, file handles) owned by the backend."""
        pass
