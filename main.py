import os
import signal
import subprocess
import sys

import logging
import argparse
from typing import Any, List, Optional

import psycopg_pool
import redis

from implementations import (
    BackendUnavailableError,
    ConnectionSettings,
    FlockLockBackend,
    LockEngine,
    LockStatus,
    PostgreSQLLockBackend,
    RedisLockBackend,
)
from interfaces import AbstractLockBackend

# sysexits.h EX_USAGE and EX_TEMPFAIL
EXIT_USAGE = 64
EXIT_LOCK_NOT_ACQUIRED = 75


def get_env_variable(name, default=None) -> Any:
    """Helper to fetch environment variables with optional defaults."""
    return os.environ.get(name, default)

def configure_logging(log_level) -> None:
    """Configure logging for the application."""
    levels = logging.getLevelNamesMapping()
    logging.basicConfig(level=levels.get(log_level, logging.INFO), stream=sys.stdout)

def create_connection_pool(settings: ConnectionSettings) -> psycopg_pool.ConnectionPool:
    """Create and return the connection pool used for lock status queries."""
    return psycopg_pool.ConnectionPool(
        min_size=1,
        max_size=3,
        conninfo=settings.conninfo(),
        kwargs={"autocommit": True},
        open=True,
    )

def create_redis_client(config) -> redis.Redis:
    """Create and return a Redis client."""
    return redis.Redis(
        host=config["redis_host"],
        port=config["redis_port"],
        db=config["redis_db"],
        encoding="utf-8",
        decode_responses=True
    )

def create_backend(config) -> AbstractLockBackend:
    """Create the lock backend selected by the configuration."""
    if config["backend"] == "postgres":
        settings = ConnectionSettings(
            user=config["db_user"],
            password=config["db_password"],
            host=config["db_host"],
            port=config["db_port"],
            dbname=config["db_name"],
            ssl_ca_cert=config["db_ssl_ca_cert"],
        )
        for warning in settings.validate():
            logging.warning(f"Configuration: {warning.message}")
        return PostgreSQLLockBackend(settings, pool=create_connection_pool(settings))

    if config["backend"] == "redis":
        backend = RedisLockBackend(create_redis_client(config), key_prefix=config["redis_key_prefix"])
        backend.set_expiration(config["lock_expiration"])
        return backend

    if config["backend"] == "flock":
        return FlockLockBackend(config["lock_dir"])

    raise ValueError(f"Unknown backend: {config['backend']}")

def make_close_handler(engine: LockEngine, children: List[subprocess.Popen]):
    """Build the termination handler: children are stopped before their locks are released."""
    def handle_close(s, frame):
        logging.info("Stopping...")
        for child in list(children):
            child.terminate()
            try:
                child.wait(timeout=10)
            except subprocess.TimeoutExpired:
                logging.warning(f"Killing process {child.pid}")
                child.kill()
                child.wait()
        engine.close()
        logging.info("Released all locks.")
        sys.exit(128 + s)

    return handle_close

def configure_signal_handlers(engine: LockEngine, children: List[subprocess.Popen]) -> None:
    """Set up handlers for termination signals."""
    handle_close = make_close_handler(engine, children)
    signal.signal(signal.SIGTERM, handle_close)
    signal.signal(signal.SIGINT, handle_close)

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse and return command-line arguments."""
    parser = argparse.ArgumentParser(description='Named lock tool')

    parser.add_argument(
        '--backend',
        type=str,
        choices=['postgres', 'redis', 'flock'],
        default=get_env_variable('LOCK_BACKEND', default='postgres')
    )

    # Database arguments
    parser.add_argument(
        '--db_host',
        type=str,
        default=get_env_variable('DB_HOST', default='localhost')
    )

    parser.add_argument(
        '--db_name',
        type=str,
        default=get_env_variable('DB_NAME')
    )

    parser.add_argument(
        '--db_user',
        type=str,
        default=get_env_variable('DB_USER', default='')
    )

    parser.add_argument(
        '--db_password',
        type=str,
        default=get_env_variable('DB_PASSWORD', default='')
    )

    parser.add_argument(
        '--db_port',
        type=int,
        default=get_env_variable('DB_PORT', default=5432)
    )

    parser.add_argument(
        '--db_ssl_ca_cert',
        type=str,
        default=get_env_variable('DB_SSL_CA_CERT')
    )

    # Redis arguments
    parser.add_argument(
        '--redis_host',
        type=str,
        default=get_env_variable('REDIS_HOST', default='localhost')
    )

    parser.add_argument(
        '--redis_port',
        type=int,
        default=get_env_variable('REDIS_PORT', default=6379)
    )

    parser.add_argument(
        '--redis_db',
        type=int,
        default=get_env_variable('REDIS_DB', default=0)
    )

    parser.add_argument(
        '--redis_key_prefix',
        type=str,
        default=get_env_variable('REDIS_KEY_PREFIX', default='lock:')
    )

    parser.add_argument(
        '--lock_expiration',
        type=int,
        default=get_env_variable('LOCK_EXPIRATION', default=0)
    )

    # Flock arguments
    parser.add_argument(
        '--lock_dir',
        type=str,
        default=get_env_variable('LOCK_DIR', default='/tmp/locks')
    )

    parser.add_argument(
        "--log_level",
        type=str,
        default=get_env_variable('LOG_LEVEL', default="INFO")
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="exit with 1 if the lock is held, 0 otherwise")
    status.add_argument("name")

    release = subparsers.add_parser("release", help="force-release a redis lock, whoever holds it")
    release.add_argument("name")

    run = subparsers.add_parser("run", help="run a command while holding a lock")
    run.add_argument("name")
    run.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="milliseconds to wait for the lock, 0 to try once, blocks when omitted"
    )
    run.add_argument("cmd", nargs=argparse.REMAINDER)

    args = parser.parse_args(argv)
    if args.command == "run":
        if args.cmd and args.cmd[0] == "--":
            args.cmd = args.cmd[1:]
        if not args.cmd:
            parser.error("run requires a command")
    return args

def run_command(
        engine: LockEngine,
        name: str,
        timeout: Optional[int],
        cmd: List[str],
        children: Optional[List[subprocess.Popen]] = None,
) -> int:
    """Run `cmd` while holding `name`, returns its exit code. The child is tracked in `children` while it runs."""
    if children is None:
        children = []
    status = engine.try_acquire_lock(name, timeout)
    if status is not LockStatus.GRANTED:
        logging.error(f"Could not acquire lock {name}: {status.value}")
        return EXIT_LOCK_NOT_ACQUIRED
    try:
        child = subprocess.Popen(cmd)
        children.append(child)
        try:
            return child.wait()
        finally:
            children.remove(child)
    finally:
        engine.release_lock(name)

def force_release(backend: AbstractLockBackend, name: str) -> int:
    """Delete a lock held by another process. Only Redis locks outlive their holder's process."""
    if not isinstance(backend, RedisLockBackend):
        logging.error(f"{type(backend).__name__} locks are released when their holder exits, nothing to force")
        return EXIT_USAGE
    try:
        backend.force_release(name)
    except BackendUnavailableError as e:
        logging.error(f"Could not release lock {name}: {e.reason}")
        return 1
    logging.info(f"Force-released lock {name}")
    return 0

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    config = vars(args)  # Convert Namespace to dict

    configure_logging(config["log_level"])

    engine = LockEngine(create_backend(config))
    children: List[subprocess.Popen] = []
    configure_signal_handlers(engine, children)

    with engine:
        if args.command == "status":
            locked = engine.is_locked(args.name)
            print("locked" if locked else "unlocked")
            return 1 if locked else 0

        if args.command == "release":
            return force_release(engine.backend, args.name)

        return run_command(engine, args.name, args.timeout, args.cmd, children)

if __name__ == "__main__":
    sys.exit(main())
