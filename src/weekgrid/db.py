"""Database provisioning and connection pool management for weekgrid.

Connection settings come from ``DATABASE_URL`` or the individual
``POSTGRES_*`` variables.  The database named in ``weekgrid.toml`` is created
on first start, then a single asyncpg pool serves the plan store and the
backoff state.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

DEFAULT_DB_NAME = "weekgrid"

_VALID_SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})
# asyncpg raises this when the server drops the connection during STARTTLS.
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"

T = TypeVar("T")


def _normalize_ssl_mode(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _VALID_SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionSettings:
    """Server coordinates shared by provisioning and the pool."""

    host: str = "localhost"
    port: int = 5432
    user: str = "weekgrid"
    password: str = "weekgrid"
    database: str | None = None
    ssl: str | None = None

    @classmethod
    def from_url(cls, database_url: str) -> ConnectionSettings:
        """Parse a libpq-style URL (``postgresql://user:pw@host:port/db?sslmode=``)."""
        parsed = urlparse(database_url)
        sslmode = parse_qs(parsed.query).get("sslmode", [None])[0]
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=parsed.username or "weekgrid",
            password=parsed.password or "weekgrid",
            database=parsed.path.lstrip("/") or None,
            ssl=_normalize_ssl_mode(sslmode),
        )

    @classmethod
    def from_env(cls) -> ConnectionSettings:
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            return cls.from_url(database_url)
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", "weekgrid"),
            password=os.environ.get("POSTGRES_PASSWORD", "weekgrid"),
            database=os.environ.get("POSTGRES_DB") or None,
            ssl=_normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when an implicit SSL attempt lost the connection mid-upgrade.

    Only applies when no sslmode was configured; an explicit mode is honoured.
    """
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


async def _open_with_ssl_fallback(
    opener: Callable[..., Awaitable[T]],
    kwargs: dict[str, Any],
    configured_ssl: str | None,
    what: str,
) -> T:
    try:
        return await opener(**kwargs)
    except Exception as exc:
        if not should_retry_with_ssl_disable(exc, configured_ssl):
            raise
        logger.info("Retrying PostgreSQL %s with ssl=disable after SSL upgrade loss", what)
        return await opener(**{**kwargs, "ssl": "disable"})


class Database:
    """Owns the weekgrid database: provisioning, pool lifecycle and URL."""

    def __init__(
        self,
        db_name: str = DEFAULT_DB_NAME,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str | None = None) -> Database:
        """Build from the environment; an explicit *db_name* wins over the URL path."""
        settings = ConnectionSettings.from_env()
        return cls(
            db_name=db_name or settings.database or DEFAULT_DB_NAME,
            host=settings.host,
            port=settings.port,
            user=settings.user,
            password=settings.password,
            ssl=settings.ssl,
        )

    @property
    def url(self) -> str:
        """SQLAlchemy-compatible URL used by the migration runner."""
        credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{credentials}@{self.host}:{self.port}/{self.db_name}"
        if self.ssl is not None:
            url = f"{url}?sslmode={self.ssl}"
        return url

    def _connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def provision(self) -> None:
        """Create the weekgrid database through the ``postgres`` maintenance DB."""
        conn = await _open_with_ssl_fallback(
            asyncpg.connect, self._connect_kwargs("postgres"), self.ssl, "provision connection"
        )
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE cannot be parameterized.
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open the connection pool to the weekgrid database."""
        kwargs = self._connect_kwargs(self.db_name)
        kwargs.update(min_size=self.min_pool_size, max_size=self.max_pool_size)
        self.pool = await _open_with_ssl_fallback(
            asyncpg.create_pool, kwargs, self.ssl, "pool creation"
        )
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Connection pool closed for: %s", self.db_name)

    def require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool
