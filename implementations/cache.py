import logging
import threading
from typing import Dict

import redis

from interfaces import AbstractLockBackend, AbstractLockExpiration
from implementations.exceptions import BackendUnavailableError
from implementations.lock import LockInformation


class RedisLockBackend(AbstractLockBackend, AbstractLockExpiration):
    """
    Lock backend using the presence of a Redis key: the lock `name` is held while
    `<key_prefix><name>` exists. The value is the serialized LockInformation of the holder.

    By default the key is written with SET NX so only one writer can create it. With
    `atomic=False` the key is overwritten unconditionally, in which case two concurrent
    acquirers can both succeed: that mode only exists to reproduce the behaviour of
    stores without an insert-only primitive and must not be relied on for exclusion.

    `release` only deletes the key while it still carries the value this instance wrote,
    so it never frees a lock taken by someone else, for instance after the TTL let a new
    holder in. `force_release` deletes the key whoever holds it.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "lock:", atomic: bool = True):
        """
        Args:
            redis_client (redis.Redis): A connected client, its setup is up to the caller.
            key_prefix (str): Prefix of the lock keys.
            atomic (bool): Use an insert-only write, see class docstring.
        """
        self._redis_client = redis_client
        self._key_prefix = key_prefix
        self._atomic = atomic
        self._expiration = 0
        self._values: Dict[str, str] = {}
        self._values_lock = threading.Lock()

    def _key(self, name: str) -> str:
        return f"{self._key_prefix}{name}"

    def set_expiration(self, expiration: int) -> None:
        if expiration < 0:
            raise ValueError("expiration must be positive or zero.")
        if expiration > self.MAX_EXPIRATION:
            logging.debug(f"Expiration {expiration} capped to {self.MAX_EXPIRATION} seconds")
            expiration = self.MAX_EXPIRATION
        self._expiration = expiration

    def get_expiration(self) -> int:
        return self._expiration

    def attempt_grant(self, name: str) -> bool:
        value = LockInformation().serialize()
        try:
            result = self._redis_client.set(
                self._key(name),
                value,
                nx=self._atomic,
                ex=self._expiration or None,
            )
        except redis.RedisError as e:
            raise BackendUnavailableError(name, str(e)) from e
        if result:
            with self._values_lock:
                self._values[name] = value
        return bool(result)

    def _delete_if_holder(self, key: str, value: str) -> bool:
        with self._redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    current = pipe.get(key)
                    if isinstance(current, bytes):
                        current = current.decode("utf-8")
                    if current != value:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    def release(self, name: str) -> bool:
        with self._values_lock:
            value = self._values.get(name)
        if value is None:
            # Nothing of ours to release.
            return True
        try:
            if not self._delete_if_holder(self._key(name), value):
                logging.debug(f"Lock {name} expired or changed hands before release")
        except redis.RedisError as e:
            raise BackendUnavailableError(name, str(e)) from e
        with self._values_lock:
            self._values.pop(name, None)
        return True

    def force_release(self, name: str) -> bool:
        """Deletes the lock key whoever holds it. Meant for administrative use only."""
        try:
            self._redis_client.delete(self._key(name))
        except redis.RedisError as e:
            raise BackendUnavailableError(name, str(e)) from e
        with self._values_lock:
            self._values.pop(name, None)
        return True

    def query(self, name: str) -> bool:
        try:
            return self._redis_client.get(self._key(name)) is not None
        except redis.RedisError as e:
            raise BackendUnavailableError(name, str(e)) from e
