import json
import os
from unittest.mock import MagicMock

import pytest
import redis

from implementations import BackendUnavailableError, LockEngine, RedisLockBackend


def test_grant_writes_lock_information(redis_client):
    backend = RedisLockBackend(redis_client)

    assert backend.attempt_grant("job-42") is True

    info = json.loads(redis_client.get("lock:job-42"))
    assert info["pid"] == os.getpid()
    assert "hostname" in info
    assert redis_client.ttl("lock:job-42") == -1


def test_custom_key_prefix(redis_client):
    backend = RedisLockBackend(redis_client, key_prefix="app:locks:")
    backend.attempt_grant("job-42")

    assert redis_client.exists("app:locks:job-42") == 1
    assert backend.query("job-42") is True


def test_grant_is_insert_only(redis_client):
    first = RedisLockBackend(redis_client)
    second = RedisLockBackend(redis_client)

    assert first.attempt_grant("job-42") is True
    assert second.attempt_grant("job-42") is False


def test_release_missing_key_succeeds(redis_client):
    backend = RedisLockBackend(redis_client)

    assert backend.release("job-42") is True
    assert backend.query("job-42") is False


def test_release_removes_key(redis_client):
    backend = RedisLockBackend(redis_client)
    backend.attempt_grant("job-42")

    assert backend.release("job-42") is True
    assert redis_client.exists("lock:job-42") == 0


def test_expiration_is_stored_as_ttl(redis_client):
    backend = RedisLockBackend(redis_client)
    backend.set_expiration(30)
    backend.attempt_grant("job-42")

    assert 0 < redis_client.ttl("lock:job-42") <= 30


def test_expiration_is_capped(redis_client):
    backend = RedisLockBackend(redis_client)
    backend.set_expiration(RedisLockBackend.MAX_EXPIRATION + 1000)
    backend.attempt_grant("job-42")

    assert backend.get_expiration() == RedisLockBackend.MAX_EXPIRATION
    assert RedisLockBackend.MAX_EXPIRATION - 5 <= redis_client.ttl("lock:job-42") <= RedisLockBackend.MAX_EXPIRATION


def test_negative_expiration_is_rejected(redis_client):
    with pytest.raises(ValueError):
        RedisLockBackend(redis_client).set_expiration(-1)


def test_expired_lock_is_no_longer_locked(redis_client):
    backend = RedisLockBackend(redis_client)
    backend.set_expiration(60)
    backend.attempt_grant("job-42")

    # Simulate the TTL running out.
    redis_client.delete("lock:job-42")

    assert backend.query("job-42") is False
    assert RedisLockBackend(redis_client).attempt_grant("job-42") is True


def test_unconditional_upsert_lets_two_holders_in(redis_client):
    """Without an insert-only write, both acquirers believe they hold the lock."""
    first = RedisLockBackend(redis_client, atomic=False)
    second = RedisLockBackend(redis_client, atomic=False)

    assert first.attempt_grant("job-42") is True
    assert second.attempt_grant("job-42") is True
    assert RedisLockBackend(redis_client).query("job-42") is True


def test_redis_errors_become_backend_unavailable():
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError("Connection refused")
    client.get.side_effect = redis.TimeoutError("Timeout reading from socket")
    backend = RedisLockBackend(client)

    with pytest.raises(BackendUnavailableError, match="Connection refused"):
        backend.attempt_grant("job-42")
    with pytest.raises(BackendUnavailableError):
        backend.query("job-42")


def test_redis_errors_on_release_become_backend_unavailable():
    client = MagicMock()
    client.set.return_value = True
    client.pipeline.side_effect = redis.ConnectionError("Connection refused")
    client.delete.side_effect = redis.ConnectionError("Connection refused")
    backend = RedisLockBackend(client)
    backend.attempt_grant("job-42")

    with pytest.raises(BackendUnavailableError, match="Connection refused"):
        backend.release("job-42")
    with pytest.raises(BackendUnavailableError):
        backend.force_release("job-42")


def test_engine_over_redis(redis_client):
    engine = LockEngine(RedisLockBackend(redis_client))
    other = LockEngine(RedisLockBackend(redis_client))
    engine.set_expiration(10)

    assert engine.acquire_lock("job-42", 0) is True
    assert other.is_locked("job-42") is True
    assert other.acquire_lock("job-42", 20) is False
    assert engine.release_lock("job-42") is True
    assert other.acquire_lock("job-42", 0) is True


def test_release_leaves_someone_elses_lock(redis_client):
    holder = RedisLockBackend(redis_client)
    stranger = RedisLockBackend(redis_client)
    holder.attempt_grant("job-42")

    assert stranger.release("job-42") is True
    assert redis_client.exists("lock:job-42") == 1


def test_release_after_expiry_leaves_the_new_holder(redis_client):
    first = RedisLockBackend(redis_client)
    second = RedisLockBackend(redis_client)
    first.set_expiration(60)
    first.attempt_grant("job-42")

    # The TTL runs out and another process takes the lock.
    redis_client.delete("lock:job-42")
    assert second.attempt_grant("job-42") is True
    value = redis_client.get("lock:job-42")

    assert first.release("job-42") is True
    assert redis_client.get("lock:job-42") == value
    assert second.release("job-42") is True
    assert redis_client.exists("lock:job-42") == 0


def test_force_release_deletes_any_holder(redis_client):
    RedisLockBackend(redis_client).attempt_grant("job-42")

    assert RedisLockBackend(redis_client).force_release("job-42") is True
    assert redis_client.exists("lock:job-42") == 0
