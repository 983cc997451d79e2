import hashlib
import logging
import threading
from typing import Callable, Dict, Optional

import psycopg
from psycopg_pool import ConnectionPool

from interfaces import AbstractLockBackend
from implementations.config import ConnectionSettings
from implementations.exceptions import BackendUnavailableError


def advisory_key(name: str) -> int:
    """
    Maps a lock name to the signed 64-bit key used by PostgreSQL advisory locks.

    Args:
        name (str): The lock name.

    Returns:
        int: A stable key in the bigint range.
    """
    digest = hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class PostgreSQLLockBackend(AbstractLockBackend):
    """
    Lock backend using PostgreSQL session-level advisory locks.

    Advisory locks belong to the session that took them, so every lock name gets its
    own connection, opened on first use and closed on release. Closing a connection
    makes the server drop its locks, which bounds the damage of a crashed holder to
    the lifetime of its session.

    Queries go through `pool` when one is given, and the backend closes that pool in
    `close()`. Without a pool they reuse a healthy lock connection, or a status
    connection kept open until `close()`. A lock that loses every attempt gets its
    connection closed when the engine abandons it.

    Attributes:
        _settings (ConnectionSettings): Connection parameters.
        _pool (Optional[ConnectionPool]): Pool used for queries only, never for locks.
        _connection_factory (Callable[..., psycopg.Connection]): Opens a connection from a conninfo string.
        _strict_tls (bool): Fail instead of falling back to an unencrypted connection.
        _connections (Dict[str, psycopg.Connection]): Lock name to the connection holding it.
        _status_connection (Optional[psycopg.Connection]): Connection kept for queries.
        _connections_lock (threading.RLock): Guards the connection map.
    """

    def __init__(
            self,
            settings: ConnectionSettings,
            pool: Optional[ConnectionPool] = None,
            connection_factory: Optional[Callable[..., psycopg.Connection]] = None,
            strict_tls: bool = False,
    ):
        """
        Args:
            settings (ConnectionSettings): Connection parameters.
            pool (Optional[ConnectionPool]): A pool used to run queries, owned by the
                backend from then on.
            connection_factory (Optional[Callable[..., psycopg.Connection]]): Opens a connection,
                defaults to `psycopg.connect`.
            strict_tls (bool): Raise ConfigurationError instead of connecting without TLS
                when the CA certificate cannot be used.
        """
        self._settings = settings
        self._pool = pool
        self._connection_factory = connection_factory or psycopg.connect
        self._strict_tls = strict_tls
        self._connections: Dict[str, psycopg.Connection] = {}
        self._status_connection = None
        self._connections_lock = threading.RLock()

    def _connect(self, name: str) -> psycopg.Connection:
        try:
            connection = self._connection_factory(self._settings.conninfo(self._strict_tls), autocommit=True)
        except psycopg.Error as e:
            raise BackendUnavailableError(name, str(e)) from e
        logging.debug(f"Opened connection to {self._settings.host}:{self._settings.port} for {name}")
        return connection

    def _setup_connection(self, name: str) -> psycopg.Connection:
        """Returns the connection dedicated to `name`, opening it if needed."""
        with self._connections_lock:
            if name not in self._connections:
                self._connections[name] = self._connect(name)
            return self._connections[name]

    def _drop_connection(self, name: str) -> None:
        with self._connections_lock:
            connection = self._connections.pop(name, None)
        if connection is not None:
            try:
                connection.close()
                logging.debug(f"Closed connection for {name}")
            except psycopg.Error as e:
                logging.debug(f"Error while closing connection for {name}: {e}")

    def _fetch(self, connection: psycopg.Connection, query: str, params: tuple):
        with connection.cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()[0]

    def attempt_grant(self, name: str) -> bool:
        connection = self._setup_connection(name)
        try:
            return bool(self._fetch(connection, "SELECT pg_try_advisory_lock(%s)", (advisory_key(name),)))
        except psycopg.OperationalError as e:
            self._drop_connection(name)
            raise BackendUnavailableError(name, str(e)) from e

    def abandon(self, name: str) -> None:
        # A session that lost every attempt holds nothing worth keeping.
        self._drop_connection(name)

    def release(self, name: str) -> bool:
        with self._connections_lock:
            connection = self._connections.get(name)
        if connection is None:
            # No session of ours ever held it.
            return True

        try:
            # False means the session no longer holds the lock, which is a release too.
            self._fetch(connection, "SELECT pg_advisory_unlock(%s)", (advisory_key(name),))
        except psycopg.OperationalError as e:
            raise BackendUnavailableError(name, str(e)) from e
        finally:
            # Ending the session releases whatever it still holds.
            self._drop_connection(name)
        return True

    def query(self, name: str) -> bool:
        key = advisory_key(name)
        # A bigint advisory key shows up in pg_locks split in two oid halves with objsubid 1.
        query = (
            "SELECT EXISTS (SELECT 1 FROM pg_locks WHERE locktype = 'advisory'"
            " AND classid = %s::bigint::oid AND objid = %s::bigint::oid AND objsubid = 1 AND granted)"
        )
        params = ((key >> 32) & 0xFFFFFFFF, key & 0xFFFFFFFF)

        if self._pool is not None:
            try:
                with self._pool.connection() as connection:
                    return bool(self._fetch(connection, query, params))
            except psycopg.OperationalError as e:
                raise BackendUnavailableError(name, str(e)) from e

        with self._connections_lock:
            for lock_name, connection in list(self._connections.items()):
                if connection.closed:
                    continue
                try:
                    return bool(self._fetch(connection, query, params))
                except psycopg.OperationalError as e:
                    # The server already dropped whatever this session held.
                    logging.warning(f"Lost the session holding {lock_name}: {e}")
                    self._drop_connection(lock_name)

            if self._status_connection is None or self._status_connection.closed:
                self._status_connection = self._connect(name)
            try:
                return bool(self._fetch(self._status_connection, query, params))
            except psycopg.OperationalError as e:
                self._status_connection.close()
                self._status_connection = None
                raise BackendUnavailableError(name, str(e)) from e

    def close(self) -> None:
        """Ends every session, then closes the query pool, which this backend owns once handed over."""
        with self._connections_lock:
            names = list(self._connections)
            status_connection, self._status_connection = self._status_connection, None
        for name in names:
            self._drop_connection(name)
        if status_connection is not None:
            status_connection.close()
        if self._pool is not None:
            self._pool.close()
