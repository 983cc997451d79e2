from abc import ABC, abstractmethod


class AbstractLockExpiration(ABC):
    """
    Optional capability for backends whose lock records can carry a time-to-live.

    WARNING: a lock that expires while its critical section is still running lets
    a second process acquire it. Pick an expiration longer than the critical section.
    """

    # 30 days
    MAX_EXPIRATION = 2592000

    @abstractmethod
    def set_expiration(self, expiration: int) -> None:
        """
        Sets the expiration of the locks created from now on.

        Args:
            expiration (int): Expiration in seconds, 0 means the lock never expires.
                Values above MAX_EXPIRATION are capped without error.
        """
        pass

    @abstractmethod
    def get_expiration(self) -> int:
        pass
