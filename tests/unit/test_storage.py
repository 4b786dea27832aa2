"""Tests for the Redis counter store and the PostgreSQL incident store."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatguard.detection.models import (
    IndicatorType,
    IOCSet,
    SignalSource,
    ThreatAnalysis,
    ThreatKind,
    ThreatSignal,
)
from chatguard.incidents.models import ActionOutcome, IncidentAlert, OutcomeStatus
from chatguard.storage.base import CounterStore, IncidentStore
from chatguard.storage.postgres import PostgresIncidentStore
from chatguard.storage.redis_store import RedisCounterStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_redis(pipeline_results: list | None = None) -> tuple[MagicMock, MagicMock]:
    """Build a mock ``redis.asyncio.Redis`` and return ``(client, pipe)``.

    Pipeline commands are queued synchronously; only ``execute`` is awaited.
    """
    client = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=pipeline_results or [])

    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=pipe)
    ctx.__aexit__ = AsyncMock(return_value=False)
    client.pipeline.return_value = ctx

    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.delete = AsyncMock(return_value=1)
    client.ttl = AsyncMock(return_value=-2)
    client.lrange = AsyncMock(return_value=[])
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    return client, pipe


def _make_pool() -> tuple[MagicMock, AsyncMock]:
    """Build a mock asyncpg.Pool and return ``(pool, conn)``."""
    pool = MagicMock()
    conn = AsyncMock()

    # pool.acquire() returns an async context manager (not a coroutine)
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = ctx

    tx_ctx = MagicMock()
    tx_ctx.__aenter__ = AsyncMock(return_value=conn)
    tx_ctx.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=tx_ctx)

    pool.close = AsyncMock()
    return pool, conn


def _alert() -> IncidentAlert:
    return IncidentAlert(
        community_id=3003,
        channel_id=2002,
        event_id=1001,
        subject_user_id=4004,
        threat_type="phishing_url",
        score=95.0,
        indicators=["https://evil.example"],
        description="Malicious URL detected: MALWARE",
        suggested_action="ban_user",
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


# ===========================================================================
# Redis counter store
# ===========================================================================


class TestRedisCounterStore:
    def test_satisfies_protocol(self) -> None:
        client, _ = _make_redis()
        assert isinstance(RedisCounterStore(client), CounterStore)

    @pytest.mark.asyncio
    async def test_increment_with_ttl(self) -> None:
        client, pipe = _make_redis([3, True, 42])
        store = RedisCounterStore(client)

        assert await store.increment_with_ttl("ratelimit:vt:global", 60) == (3, 42)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("chatguard:ratelimit:vt:global")
        pipe.expire.assert_called_once_with("chatguard:ratelimit:vt:global", 60, nx=True)
        pipe.ttl.assert_called_once_with("chatguard:ratelimit:vt:global")

    @pytest.mark.asyncio
    async def test_record_in_window(self) -> None:
        client, pipe = _make_redis([0, 1, True, 4])
        store = RedisCounterStore(client, prefix="t:")

        count = await store.record_in_window("anti_raid:joins:1", "m1", 100.0, 10, 20)

        assert count == 4
        pipe.zremrangebyscore.assert_called_once_with("t:anti_raid:joins:1", "-inf", "(90.0")
        pipe.zadd.assert_called_once_with("t:anti_raid:joins:1", {"m1": 100.0})
        pipe.expire.assert_called_once_with("t:anti_raid:joins:1", 20)
        pipe.zcard.assert_called_once_with("t:anti_raid:joins:1")

    @pytest.mark.asyncio
    async def test_set_if_absent(self) -> None:
        client, _ = _make_redis()
        store = RedisCounterStore(client)

        assert await store.set_if_absent("flag", "1", 60) is True
        client.set.assert_awaited_once_with("chatguard:flag", "1", nx=True, ex=60)

        client.set.return_value = None
        assert await store.set_if_absent("flag", "1", 60) is False

    @pytest.mark.asyncio
    async def test_values(self) -> None:
        client, _ = _make_redis()
        client.get.return_value = "v"
        client.delete.return_value = 2
        client.ttl.return_value = 30
        store = RedisCounterStore(client)

        await store.set_with_ttl("k", "v", 30)
        client.set.assert_awaited_once_with("chatguard:k", "v", ex=30)
        assert await store.get("k") == "v"
        assert await store.ttl("k") == 30
        assert await store.delete("a", "b") == 2
        client.delete.assert_awaited_once_with("chatguard:a", "chatguard:b")
        assert await store.delete() == 0

    @pytest.mark.asyncio
    async def test_push_capped_and_range(self) -> None:
        client, pipe = _make_redis([1, True, True])
        client.lrange.return_value = ["newest", "older"]
        store = RedisCounterStore(client)

        await store.push_capped("anti_raid:events:1", "newest", 100, 3600)
        pipe.lpush.assert_called_once_with("chatguard:anti_raid:events:1", "newest")
        pipe.ltrim.assert_called_once_with("chatguard:anti_raid:events:1", 0, 99)
        pipe.expire.assert_called_once_with("chatguard:anti_raid:events:1", 3600)

        assert await store.list_range("anti_raid:events:1", 0, 9) == ["newest", "older"]
        client.lrange.assert_awaited_once_with("chatguard:anti_raid:events:1", 0, 9)

    @pytest.mark.asyncio
    async def test_ping_failure(self) -> None:
        import redis.asyncio as redis

        client, _ = _make_redis()
        client.ping.side_effect = redis.ConnectionError("refused")
        assert await RedisCounterStore(client).ping() is False

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        client, _ = _make_redis()
        await RedisCounterStore(client).close()
        client.aclose.assert_awaited_once()

    def test_from_url(self) -> None:
        with patch("chatguard.storage.redis_store.redis.from_url") as from_url:
            store = RedisCounterStore.from_url("redis://:secret@cache:6379/0", prefix="x:")
        from_url.assert_called_once_with(
            "redis://:secret@cache:6379/0", decode_responses=True, socket_timeout=5.0
        )
        assert store._prefix == "x:"


# ===========================================================================
# PostgreSQL incident store
# ===========================================================================


class TestPostgresIncidentStore:
    @pytest.fixture
    def store_and_conn(self):
        pool, conn = _make_pool()
        store = PostgresIncidentStore("postgresql://u:p@db:5432/chatguard")
        store._pool = pool
        return store, conn

    def test_satisfies_protocol(self) -> None:
        assert isinstance(PostgresIncidentStore("postgresql://x"), IncidentStore)

    @pytest.mark.asyncio
    async def test_initialize_creates_schema(self) -> None:
        pool, conn = _make_pool()
        store = PostgresIncidentStore("postgresql://u:p@db:5432/chatguard")
        with patch(
            "chatguard.storage.postgres.asyncpg.create_pool", new=AsyncMock(return_value=pool)
        ):
            await store.initialize()
        sql = conn.execute.await_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS incident_alerts" in sql
        assert "CREATE TABLE IF NOT EXISTS incident_outcomes" in sql
        assert "CREATE TABLE IF NOT EXISTS threat_detections" in sql

        await store.close()
        pool.close.assert_awaited_once()
        assert store._pool is None

    @pytest.mark.asyncio
    async def test_initialize_propagates_connection_errors(self) -> None:
        store = PostgresIncidentStore("postgresql://u:p@db:5432/chatguard")
        with (
            patch(
                "chatguard.storage.postgres.asyncpg.create_pool",
                new=AsyncMock(side_effect=OSError("connection refused")),
            ),
            pytest.raises(OSError),
        ):
            await store.initialize()

    @pytest.mark.asyncio
    async def test_get_or_create(self, store_and_conn) -> None:
        store, conn = store_and_conn
        conn.fetchrow.return_value = {"attrs": json.dumps({"user_id": 4004})}

        attrs = await store.get_or_create("user", "3003:4004", {"user_id": 4004})

        assert attrs == {"user_id": 4004}
        insert_args = conn.execute.await_args.args
        assert "ON CONFLICT (kind, key) DO NOTHING" in insert_args[0]
        assert insert_args[1:] == ("user", "3003:4004", json.dumps({"user_id": 4004}))
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_record_alert(self, store_and_conn) -> None:
        store, conn = store_and_conn
        alert = _alert()

        await store.record_alert(alert)

        args = conn.execute.await_args.args
        assert "INSERT INTO incident_alerts" in args[0]
        assert args[1] == alert.id
        assert args[10] == json.dumps(["https://evil.example"])
        assert args[11] is None
        assert args[12] == "open"

    @pytest.mark.asyncio
    async def test_record_detection(self, store_and_conn, make_message) -> None:
        store, conn = store_and_conn
        signal = ThreatSignal(
            kind=ThreatKind.SPAM,
            score=40,
            indicator="free nitro",
            indicator_type=IndicatorType.MESSAGE_CONTENT,
            source=SignalSource.PATTERN_MATCHING,
            description="Suspicious content patterns detected",
        )
        analysis = ThreatAnalysis.from_signals([signal], IOCSet(urls=("https://bit.ly/x",)))

        await store.record_detection(make_message("free nitro"), analysis)

        args = conn.execute.await_args.args
        assert "INSERT INTO threat_detections" in args[0]
        assert args[1:8] == (3003, 2002, 1001, 4004, "spam", 40.0, "none")
        assert json.loads(args[8])[0]["source"] == "pattern_matching"
        assert json.loads(args[9])["urls"] == ["https://bit.ly/x"]

    @pytest.mark.asyncio
    async def test_record_outcome_resolves(self, store_and_conn) -> None:
        store, conn = store_and_conn
        outcome = ActionOutcome(
            alert_id="abc",
            action="ban",
            status=OutcomeStatus.SUCCEEDED,
            analyst_id=77,
            message="User <@4004> has been banned.",
        )

        await store.record_outcome("abc", outcome)

        insert, update = conn.execute.await_args_list
        assert insert.args[1:] == ("abc", "ban", "succeeded", 77, outcome.message)
        assert "status = 'resolved'" in update.args[0]
        conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_count_active(self, store_and_conn) -> None:
        store, conn = store_and_conn
        conn.fetchval.return_value = 2

        assert await store.count_active("incident", 4004, 3003) == 2
        query, subject, community = conn.fetchval.await_args.args
        assert "status = 'open'" in query
        assert (subject, community) == (4004, 3003)

    @pytest.mark.asyncio
    async def test_count_active_unknown_kind(self, store_and_conn) -> None:
        store, _ = store_and_conn
        with pytest.raises(ValueError, match="Unknown entity kind"):
            await store.count_active("widget", 1, 2)
