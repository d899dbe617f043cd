"""
Postgres client for the deal workflow data source.

Thin wrapper over a SQLAlchemy 2.0 async engine (asyncpg driver) that runs
raw text() SQL. Transient driver failures (dropped connections, timeouts)
are retried with tenacity and then surfaced as TransientIOError; anything
else is wrapped as DataSourceQueryError.

Also exposes LISTEN/NOTIFY as a closable async iterator, used for the
deal_participants change channel.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import config
from ..errors import DataSourceError, TransientIOError, wrap_database_error

logger = structlog.get_logger(__name__)

_retry_transient = retry(
    retry=retry_if_exception_type(TransientIOError),
    stop=stop_after_attempt(config.DB_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)


def _sanitize_url(url: str) -> str:
    """Remove URL query params that asyncpg does not understand.

    Pooler URLs often include ``channel_binding=require`` and
    ``sslmode=require``, which are libpq parameters that asyncpg rejects.
    """
    _STRIP_PARAMS = {'channel_binding', 'sslmode'}
    parsed = urlparse(url)
    if not parsed.query:
        return url
    params = parse_qs(parsed.query)
    filtered = {k: v for k, v in params.items() if k not in _STRIP_PARAMS}
    new_query = urlencode(filtered, doseq=True)
    return urlunparse(parsed._replace(query=new_query))


def _normalize_driver(url: str) -> str:
    """Force the asyncpg driver prefix."""
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql+asyncpg://', 1)
    if url.startswith('postgresql://') and '+asyncpg' not in url:
        return url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return url


class PostgresClient:
    """
    Async Postgres client used by DealRepository.

    All query helpers take a SQL string with :named parameters.
    """

    def __init__(self, database_url: str | None = None):
        """
        Args:
            database_url: Postgres connection URL. postgres:// and
                          postgresql:// URLs are converted to asyncpg.
        """
        self._engine: AsyncEngine | None = None
        self._database_url = database_url or config.DATABASE_URL

    async def connect(self, database_url: str | None = None) -> None:
        """Create the async engine. Idempotent: no-op if already connected."""
        if self._engine is not None:
            return

        url = database_url or self._database_url
        if not url:
            raise ValueError('database_url is required')

        url = _normalize_driver(_sanitize_url(url))

        self._engine = create_async_engine(
            url,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=5,
            pool_pre_ping=True,
            pool_timeout=30,
        )
        logger.info('postgres_client.connected')

    async def close(self) -> None:
        """Dispose of the engine and connection pool."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            logger.info('postgres_client.closed')

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError('PostgresClient not connected, call connect() first')
        return self._engine

    async def verify_connectivity(self) -> bool:
        """Return True if we can execute a simple query."""
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
            return True
        except Exception:
            logger.exception('postgres_client.connectivity_check_failed')
            return False

    # =========================================================================
    # Query Helpers
    # =========================================================================

    @_retry_transient
    async def fetch_all(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a SELECT and return rows as dicts."""
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(text(sql), params or {})
                return [dict(row) for row in result.mappings().all()]
        except DataSourceError:
            raise
        except Exception as e:
            raise wrap_database_error(e, {'operation': 'fetch_all'}) from e

    async def fetch_one(self, sql: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        """Run a SELECT and return the first row, or None."""
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    @_retry_transient
    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> int:
        """Run a write statement; returns the affected row count."""
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(text(sql), params or {})
                return result.rowcount
        except DataSourceError:
            raise
        except Exception as e:
            raise wrap_database_error(e, {'operation': 'execute'}) from e

    @_retry_transient
    async def execute_many(self, sql: str, params: list[dict[str, Any]]) -> None:
        """Run one write statement for each parameter set in a single transaction."""
        if not params:
            return
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text(sql), params)
        except DataSourceError:
            raise
        except Exception as e:
            raise wrap_database_error(e, {'operation': 'execute_many', 'rows': len(params)}) from e


    # =========================================================================
    # LISTEN / NOTIFY
    # =========================================================================

    async def listen(self, channel: str) -> NotificationStream:
        """
        LISTEN on a channel and return the stream of NOTIFY payloads.

        The listener is registered before this returns, so no notification
        sent afterwards is missed. Holds one pooled connection until the
        stream is closed.
        """
        queue: asyncio.Queue[str] = asyncio.Queue()

        def _on_notify(connection: Any, pid: int, notify_channel: str, payload: str) -> None:
            queue.put_nowait(payload)

        conn = await self.engine.connect()
        try:
            raw = await conn.get_raw_connection()
            driver = raw.driver_connection
            await driver.add_listener(channel, _on_notify)
        except Exception:
            await conn.close()
            raise

        logger.info('postgres_client.listening', channel=channel)
        return NotificationStream(conn, driver, channel, _on_notify, queue)


class NotificationStream:
    """Async iterator over the payloads of one LISTEN registration."""

    def __init__(
        self,
        conn: AsyncConnection,
        driver: Any,
        channel: str,
        callback: Callable[..., None],
        queue: asyncio.Queue[str],
    ):
        self.channel = channel
        self._conn = conn
        self._driver = driver
        self._callback = callback
        self._queue = queue
        self._closed = False

    def __aiter__(self) -> NotificationStream:
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def aclose(self) -> None:
        """Remove the listener and return the connection to the pool."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._driver.remove_listener(self.channel, self._callback)
        finally:
            await self._conn.close()
        logger.info('postgres_client.unlistened', channel=self.channel)
