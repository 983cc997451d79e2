import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from psycopg.conninfo import make_conninfo

from implementations.exceptions import ConfigurationError


@dataclass(frozen=True)
class ConfigWarning:
    option: str
    message: str


@dataclass
class ConnectionSettings:
    """
    Connection parameters for the PostgreSQL lock backend.

    Attributes:
        user (str): Database user.
        password (str): Database password.
        host (str): Database host.
        port (int): Database port.
        dbname (Optional[str]): Database to connect to, the server default when None.
        ssl_ca_cert (Optional[str]): Path to a CA certificate file to connect using TLS.
        connect_timeout (Optional[int]): Seconds to wait for a connection before giving up.
    """

    user: str
    password: str
    host: str
    port: int = 5432
    dbname: Optional[str] = None
    ssl_ca_cert: Optional[str] = None
    connect_timeout: Optional[int] = None

    def validate(self) -> List[ConfigWarning]:
        """
        Checks the options that are downgraded instead of failing at connection time.

        Returns:
            List[ConfigWarning]: One entry per option that cannot be honored.
        """
        warnings = []
        if self.ssl_ca_cert:
            if not os.path.isfile(self.ssl_ca_cert):
                warnings.append(ConfigWarning("ssl_ca_cert", f"SSL CA certificate file {self.ssl_ca_cert} doesn't exist"))
            elif not os.access(self.ssl_ca_cert, os.R_OK):
                warnings.append(ConfigWarning("ssl_ca_cert", f"SSL CA certificate file {self.ssl_ca_cert} is not readable"))
        return warnings

    def conninfo(self, strict_tls: bool = False) -> str:
        """
        Builds the libpq connection string. A CA certificate that cannot be used is
        dropped with a warning and the connection falls back to an unencrypted one,
        unless `strict_tls` is set.

        Raises:
            ConfigurationError: If `strict_tls` is set and the TLS options are invalid.
        """
        params = {
            "user": self.user,
            "password": self.password,
            "host": self.host,
            "port": self.port,
        }
        if self.dbname:
            params["dbname"] = self.dbname
        if self.connect_timeout is not None:
            params["connect_timeout"] = self.connect_timeout

        if self.ssl_ca_cert:
            warnings = self.validate()
            if not warnings:
                params["sslmode"] = "verify-ca"
                params["sslrootcert"] = self.ssl_ca_cert
            elif strict_tls:
                raise ConfigurationError("; ".join(w.message for w in warnings))
            else:
                for w in warnings:
                    logging.warning(f"{w.message}, connecting without TLS")
        return make_conninfo(**params)

    @classmethod
    def from_env(cls, prefix: str = "LOCK_DB_") -> "ConnectionSettings":
        """Reads the settings from `<prefix>USER`, `<prefix>PASSWORD`, `<prefix>HOST`, etc."""
        def get(name, default=None):
            return os.environ.get(prefix + name, default)

        timeout = get("CONNECT_TIMEOUT")
        return cls(
            user=get("USER", ""),
            password=get("PASSWORD", ""),
            host=get("HOST", "localhost"),
            port=int(get("PORT", 5432)),
            dbname=get("NAME"),
            ssl_ca_cert=get("SSL_CA_CERT"),
            connect_timeout=int(timeout) if timeout else None,
        )
