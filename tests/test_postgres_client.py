"""
Tests for the PostgresClient.

Tests cover:
- Connection management (connect, close, verify_connectivity)
- URL sanitising and asyncpg driver normalisation
- fetch_all / fetch_one / execute / execute_many
- Driver error wrapping and transient retry
- LISTEN/NOTIFY iteration and listener cleanup
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from tenacity import wait_none

from deal_workflow.clients.postgres_client import (
    PostgresClient,
    _normalize_driver,
    _sanitize_url,
)
from deal_workflow.errors import DataSourceQueryError, TransientIOError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_engine():
    """Create a mock AsyncEngine with a mock connection context manager."""
    engine = AsyncMock()

    # Mock the begin() context manager to yield a mock connection
    conn = AsyncMock()
    conn.execute = AsyncMock()

    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)

    engine.begin = MagicMock(return_value=ctx)
    engine.dispose = AsyncMock()

    return engine, conn


@pytest.fixture
def client(mock_engine):
    """Create a PostgresClient with a pre-injected mock engine."""
    engine, _ = mock_engine
    pg = PostgresClient()
    pg._engine = engine
    return pg


def _result(rows=None, rowcount=0) -> MagicMock:
    result = MagicMock()
    result.mappings.return_value.all.return_value = rows or []
    result.rowcount = rowcount
    return result


# =============================================================================
# URL Helpers
# =============================================================================


class TestUrlHelpers:
    def test_sanitize_strips_libpq_params(self):
        url = "postgresql://u:p@host/db?sslmode=require&channel_binding=require&application_name=x"
        assert _sanitize_url(url) == "postgresql://u:p@host/db?application_name=x"

    def test_sanitize_without_query(self):
        assert _sanitize_url("postgresql://u:p@host/db") == "postgresql://u:p@host/db"

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
            ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
            ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
        ],
    )
    def test_normalize_driver(self, url, expected):
        assert _normalize_driver(url) == expected


# =============================================================================
# Connection Management
# =============================================================================


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_creates_asyncpg_engine(self):
        pg = PostgresClient("postgres://u:p@host/db?sslmode=require")

        with patch("deal_workflow.clients.postgres_client.create_async_engine") as mock_create:
            await pg.connect()
            await pg.connect()  # idempotent

        mock_create.assert_called_once()
        assert mock_create.call_args.args[0] == "postgresql+asyncpg://u:p@host/db"

    @pytest.mark.asyncio
    async def test_connect_without_url_raises(self):
        pg = PostgresClient()
        pg._database_url = ""

        with pytest.raises(ValueError):
            await pg.connect()

    def test_engine_before_connect_raises(self):
        with pytest.raises(RuntimeError):
            PostgresClient("postgresql://u@h/db").engine

    @pytest.mark.asyncio
    async def test_close_disposes_engine(self, client, mock_engine):
        engine, _ = mock_engine

        await client.close()

        engine.dispose.assert_awaited_once()
        assert client._engine is None

    @pytest.mark.asyncio
    async def test_verify_connectivity(self, client, mock_engine):
        _, conn = mock_engine
        assert await client.verify_connectivity() is True

        conn.execute.side_effect = Exception("server closed the connection")
        assert await client.verify_connectivity() is False


# =============================================================================
# Query Helpers
# =============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_fetch_all_returns_dicts(self, client, mock_engine):
        _, conn = mock_engine
        conn.execute.return_value = _result([{"id": "a"}, {"id": "b"}])

        rows = await client.fetch_all("SELECT id FROM deals WHERE x = :x", {"x": 1})

        assert rows == [{"id": "a"}, {"id": "b"}]
        assert conn.execute.call_args.args[1] == {"x": 1}

    @pytest.mark.asyncio
    async def test_fetch_one(self, client, mock_engine):
        _, conn = mock_engine
        conn.execute.return_value = _result([])

        assert await client.fetch_one("SELECT 1") is None

    @pytest.mark.asyncio
    async def test_execute_returns_rowcount(self, client, mock_engine):
        _, conn = mock_engine
        conn.execute.return_value = _result(rowcount=1)

        assert await client.execute("UPDATE deals SET status = 'ready'") == 1

    @pytest.mark.asyncio
    async def test_execute_many_skips_empty(self, client, mock_engine):
        engine, _ = mock_engine

        await client.execute_many("INSERT INTO t VALUES (:a)", [])

        engine.begin.assert_not_called()

    @pytest.mark.asyncio
    async def test_execute_many_single_transaction(self, client, mock_engine):
        engine, conn = mock_engine

        await client.execute_many("INSERT INTO t VALUES (:a)", [{"a": 1}, {"a": 2}])

        engine.begin.assert_called_once()
        assert conn.execute.call_args.args[1] == [{"a": 1}, {"a": 2}]


class TestErrorHandling:
    @pytest.mark.asyncio
    async def test_query_error_is_wrapped_and_not_retried(self, client, mock_engine):
        _, conn = mock_engine
        conn.execute.side_effect = Exception('syntax error at or near "SELEC"')

        with pytest.raises(DataSourceQueryError) as exc_info:
            await client.fetch_all("SELEC 1")

        assert exc_info.value.context["operation"] == "fetch_all"
        assert conn.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_retried_then_raised(self, client, mock_engine):
        _, conn = mock_engine
        conn.execute.side_effect = Exception("connection reset by peer")

        fetch_all = PostgresClient.fetch_all.retry_with(wait=wait_none())
        with pytest.raises(TransientIOError):
            await fetch_all(client, "SELECT 1")

        assert conn.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self, client, mock_engine):
        _, conn = mock_engine
        conn.execute.side_effect = [Exception("timeout expired"), _result(rowcount=1)]

        execute = PostgresClient.execute.retry_with(wait=wait_none())

        assert await execute(client, "UPDATE deals SET status = 'draft'") == 1
        assert conn.execute.await_count == 2


# =============================================================================
# LISTEN / NOTIFY
# =============================================================================


def _listen_connection(driver) -> AsyncMock:
    raw = MagicMock()
    raw.driver_connection = driver
    conn = AsyncMock()
    conn.get_raw_connection = AsyncMock(return_value=raw)
    conn.close = AsyncMock()
    return conn


class TestListen:
    @pytest.mark.asyncio
    async def test_listener_registered_before_iteration(self, client, mock_engine):
        engine, _ = mock_engine
        driver = MagicMock()
        driver.add_listener = AsyncMock()
        driver.remove_listener = AsyncMock()
        conn = _listen_connection(driver)
        engine.connect = AsyncMock(return_value=conn)

        stream = await client.listen("deal_participants_changed")

        # Registered on return, nothing consumed yet
        driver.add_listener.assert_awaited_once()
        channel, callback = driver.add_listener.await_args.args
        assert channel == "deal_participants_changed"

        callback(None, 1, channel, '{"deal_id": "d"}')
        assert await stream.__anext__() == '{"deal_id": "d"}'

        await stream.aclose()
        await stream.aclose()

        driver.remove_listener.assert_awaited_once_with("deal_participants_changed", callback)
        conn.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_closed_stream_stops_iteration(self, client, mock_engine):
        engine, _ = mock_engine
        driver = MagicMock()
        driver.add_listener = AsyncMock()
        driver.remove_listener = AsyncMock()
        engine.connect = AsyncMock(return_value=_listen_connection(driver))

        stream = await client.listen("roster")
        await stream.aclose()

        assert [payload async for payload in stream] == []

    @pytest.mark.asyncio
    async def test_failed_listen_releases_connection(self, client, mock_engine):
        engine, _ = mock_engine
        driver = MagicMock()
        driver.add_listener = AsyncMock(side_effect=Exception("connection refused"))
        conn = _listen_connection(driver)
        engine.connect = AsyncMock(return_value=conn)

        with pytest.raises(Exception, match="connection refused"):
            await client.listen("roster")

        conn.close.assert_awaited_once()
