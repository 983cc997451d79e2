import threading
from collections import Counter
from typing import Dict, Optional

import fakeredis
import psycopg
import pytest

from interfaces import AbstractLockBackend
from implementations import BackendUnavailableError, LockEngine


class MemoryLockBackend(AbstractLockBackend):
    """In-process backend sharing its lock table between instances, with call counting."""

    def __init__(self, store: Dict[str, int], guard: threading.Lock):
        self.store = store
        self.guard = guard
        self.calls = Counter()
        self.unavailable = False
        self.closed = False

    def _check(self, name):
        if self.unavailable:
            raise BackendUnavailableError(name, "connection refused")

    def attempt_grant(self, name):
        self.calls["attempt_grant"] += 1
        self._check(name)
        with self.guard:
            if name in self.store:
                return False
            self.store[name] = id(self)
            return True

    def release(self, name):
        self.calls["release"] += 1
        self._check(name)
        with self.guard:
            if self.store.get(name) == id(self):
                del self.store[name]
        return True

    def query(self, name):
        self.calls["query"] += 1
        self._check(name)
        with self.guard:
            return name in self.store

    def abandon(self, name):
        self.calls["abandon"] += 1

    def close(self):
        self.closed = True


@pytest.fixture
def memory_store():
    return {}, threading.Lock()


@pytest.fixture
def make_memory_backend(memory_store):
    store, guard = memory_store

    def factory():
        return MemoryLockBackend(store, guard)

    return factory


@pytest.fixture
def engine(make_memory_backend):
    return LockEngine(make_memory_backend())


@pytest.fixture
def other_engine(make_memory_backend):
    return LockEngine(make_memory_backend())


@pytest.fixture
def redis_client():
    """Redis client using fakeredis."""
    client = fakeredis.FakeRedis(decode_responses=True)
    client.flushall()
    yield client
    client.flushall()


class FakeCursor:
    def __init__(self, connection):
        self._connection = connection
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params):
        self._connection.server.executed.append((query, params))
        self._row = (self._connection.server.run(self._connection, query, params),)

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, server, conninfo, autocommit):
        self.server = server
        self.conninfo = conninfo
        self.autocommit = autocommit
        self.closed = False
        self.fail = False

    def cursor(self):
        if self.closed:
            raise psycopg.OperationalError("the connection is closed")
        if self.fail:
            raise psycopg.OperationalError("server closed the connection unexpectedly")
        return FakeCursor(self)

    def close(self):
        self.closed = True
        self.server.drop_session(self)


class FakePostgresServer:
    """Minimal model of session-level advisory locks, addressed with the queries the backend sends."""

    def __init__(self):
        self.locks: Dict[int, FakeConnection] = {}
        self.connections = []
        self.executed = []
        self.refuse: Optional[str] = None
        self.guard = threading.Lock()

    def connect(self, conninfo, autocommit=False):
        if self.refuse:
            raise psycopg.OperationalError(self.refuse)
        connection = FakeConnection(self, conninfo, autocommit)
        self.connections.append(connection)
        return connection

    def run(self, connection, query, params):
        with self.guard:
            if "pg_try_advisory_lock" in query:
                key = params[0]
                holder = self.locks.get(key)
                if holder is None or holder is connection:
                    self.locks[key] = connection
                    return True
                return False
            if "pg_advisory_unlock" in query:
                key = params[0]
                if self.locks.get(key) is connection:
                    del self.locks[key]
                    return True
                return False
            if "pg_locks" in query:
                high, low = params
                key = (high << 32) | low
                if key >= 1 << 63:
                    key -= 1 << 64
                return key in self.locks
        raise AssertionError(f"unexpected query {query}")

    def drop_session(self, connection):
        with self.guard:
            for key in [k for k, c in self.locks.items() if c is connection]:
                del self.locks[key]

    @property
    def open_connections(self):
        return [c for c in self.connections if not c.closed]


@pytest.fixture
def postgres_server():
    return FakePostgresServer()
