"""asyncpg pool for the calsync event cache.

Connection settings come from ``[database] url`` in ``calsync.toml`` or,
when that is unset, from ``DATABASE_URL`` / the ``POSTGRES_*`` variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg

from calsync.config import DatabaseConfig

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "calsync"
DEFAULT_PORT = 5432

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
# asyncpg reports a server that drops the STARTTLS upgrade with this message.
_LOST_SSL_UPGRADE = "unexpected connection_lost() call"


def _ssl_mode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", value)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionParams:
    """Where and how to reach PostgreSQL."""

    host: str = "localhost"
    port: int = DEFAULT_PORT
    user: str = "calsync"
    password: str = "calsync"
    database: str = DEFAULT_DB_NAME
    ssl: str | None = None

    def __repr__(self) -> str:
        return (
            f"ConnectionParams(host={self.host!r}, port={self.port!r}, "
            f"user={self.user!r}, database={self.database!r}, ssl={self.ssl!r})"
        )

    def pool_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": self.database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


def db_params_from_url(database_url: str) -> ConnectionParams:
    """Read a libpq-style URL such as ``postgres://user:pw@host:5432/db?sslmode=require``."""
    parsed = urlparse(database_url)
    query = parse_qs(parsed.query)
    defaults = ConnectionParams()
    return ConnectionParams(
        host=parsed.hostname or defaults.host,
        port=parsed.port or defaults.port,
        user=parsed.username or defaults.user,
        password=parsed.password or defaults.password,
        database=parsed.path.lstrip("/") or defaults.database,
        ssl=_ssl_mode(query.get("sslmode", [None])[0]),
    )


def db_params_from_env() -> ConnectionParams:
    """``DATABASE_URL`` when set, otherwise the individual ``POSTGRES_*`` variables."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        return db_params_from_url(database_url)
    defaults = ConnectionParams()
    return ConnectionParams(
        host=os.environ.get("POSTGRES_HOST", defaults.host),
        port=int(os.environ.get("POSTGRES_PORT", str(defaults.port))),
        user=os.environ.get("POSTGRES_USER", defaults.user),
        password=os.environ.get("POSTGRES_PASSWORD", defaults.password),
        database=os.environ.get("POSTGRES_DB", defaults.database),
        ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
    )


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when no sslmode was configured and the server dropped the SSL upgrade."""
    if configured_ssl is not None:
        return False
    return isinstance(exc, ConnectionError) and _LOST_SSL_UPGRADE in str(exc)


class Database:
    """Owns the asyncpg pool that backs :class:`~calsync.calendar.pg_store.PostgresEventStore`."""

    def __init__(
        self,
        params: ConnectionParams | None = None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> None:
        self.params = params or ConnectionParams()
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    def __repr__(self) -> str:
        return f"Database({self.params!r})"

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        params = db_params_from_url(config.url) if config.url else db_params_from_env()
        return cls(params, min_pool_size=config.min_pool_size, max_pool_size=config.max_pool_size)

    async def connect(self) -> asyncpg.Pool:
        """Open the pool, retrying once with ``ssl=disable`` after a lost SSL upgrade."""
        try:
            self.pool = await self._create_pool(self.params)
        except Exception as exc:
            if not should_retry_with_ssl_disable(exc, self.params.ssl):
                raise
            logger.info("PostgreSQL dropped the SSL upgrade; retrying with ssl=disable")
            self.pool = await self._create_pool(replace(self.params, ssl="disable"))
        logger.info("Connected to PostgreSQL database %s", self.params.database)
        return self.pool

    async def _create_pool(self, params: ConnectionParams) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            **params.pool_kwargs(),
        )

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Closed PostgreSQL pool for %s", self.params.database)

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database {self.params.database!r} has no active connection pool")
        return self.pool
