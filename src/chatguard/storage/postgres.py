"""PostgreSQL-backed incident store.

Follows the usual ``asyncpg.Pool`` pattern: :meth:`initialize` creates the
pool and schema, every method borrows a connection, and multi-statement
mutations run in a transaction.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-not-found,import-untyped]

from chatguard.logging import get_logger

if TYPE_CHECKING:
    from chatguard.detection.models import ThreatAnalysis
    from chatguard.incidents.models import ActionOutcome, IncidentAlert
    from chatguard.platform.events import MessageEvent

log = get_logger("chatguard.storage.postgres")

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS guard_entities (
    kind        VARCHAR(50)  NOT NULL,
    key         TEXT         NOT NULL,
    attrs       JSONB        NOT NULL DEFAULT '{}',
    created_at  TIMESTAMPTZ  NOT NULL DEFAULT now(),
    PRIMARY KEY (kind, key)
);

CREATE TABLE IF NOT EXISTS threat_detections (
    id                SERIAL       PRIMARY KEY,
    community_id      BIGINT       NOT NULL,
    channel_id        BIGINT       NOT NULL,
    message_id        BIGINT       NOT NULL,
    user_id           BIGINT       NOT NULL,
    threat_type       VARCHAR(50)  NOT NULL,
    score             REAL         NOT NULL,
    suggested_action  VARCHAR(30)  NOT NULL,
    signals           JSONB        NOT NULL DEFAULT '[]',
    iocs              JSONB        NOT NULL DEFAULT '{}',
    created_at        TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_threat_detections_user
    ON threat_detections (community_id, user_id, created_at);

CREATE TABLE IF NOT EXISTS incident_alerts (
    id                TEXT         PRIMARY KEY,
    community_id      BIGINT       NOT NULL,
    channel_id        BIGINT       NOT NULL,
    event_id          BIGINT       NOT NULL,
    subject_user_id   BIGINT       NOT NULL,
    threat_type       VARCHAR(50)  NOT NULL,
    score             REAL         NOT NULL,
    suggested_action  VARCHAR(30)  NOT NULL,
    description       TEXT         NOT NULL DEFAULT '',
    indicators        JSONB        NOT NULL DEFAULT '[]',
    enrichment        JSONB,
    status            VARCHAR(20)  NOT NULL DEFAULT 'open'
                      CHECK (status IN ('open', 'resolved')),
    alert_message_id  BIGINT,
    created_at        TIMESTAMPTZ  NOT NULL DEFAULT now(),
    resolved_at       TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_incident_alerts_subject
    ON incident_alerts (community_id, subject_user_id, status);

CREATE TABLE IF NOT EXISTS incident_outcomes (
    id          SERIAL       PRIMARY KEY,
    alert_id    TEXT         NOT NULL REFERENCES incident_alerts(id) ON DELETE CASCADE,
    action      VARCHAR(20)  NOT NULL,
    status      VARCHAR(30)  NOT NULL,
    analyst_id  BIGINT,
    message     TEXT         NOT NULL DEFAULT '',
    created_at  TIMESTAMPTZ  NOT NULL DEFAULT now()
);
"""

# Active-record queries per entity kind: $1 subject, $2 community
_COUNT_ACTIVE_SQL: dict[str, str] = {
    "incident": (
        "SELECT COUNT(*) FROM incident_alerts "
        "WHERE subject_user_id = $1 AND community_id = $2 AND status = 'open'"
    ),
    "alert": (
        "SELECT COUNT(*) FROM incident_alerts "
        "WHERE subject_user_id = $1 AND community_id = $2"
    ),
}


def _decode_attrs(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        return json.loads(value)
    return dict(value or {})


class PostgresIncidentStore:
    """:class:`~chatguard.storage.base.IncidentStore` over asyncpg."""

    def __init__(self, dsn: str) -> None:
        """Initialize the store.

        Args:
            dsn: PostgreSQL connection string.
        """
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None  # type: ignore[type-arg]

    async def initialize(self) -> None:
        """Create the connection pool and ensure the schema exists."""
        try:
            self._pool = await asyncpg.create_pool(dsn=self._dsn)
            log.info("postgres_pool_created", dsn=self._dsn.split("@")[-1])
        except (asyncpg.PostgresError, OSError) as exc:
            log.error("postgres_pool_creation_failed", error=str(exc))
            raise

        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(_SCHEMA_SQL)
        log.info("incident_schema_ensured")

    async def close(self) -> None:
        """Gracefully close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            log.info("postgres_pool_closed")

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def get_or_create(
        self, kind: str, key: str, attrs: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Return the entity's attributes, inserting it with *attrs* if missing."""
        async with self._pool.acquire() as conn, conn.transaction():  # type: ignore[union-attr]
            await conn.execute(
                """
                INSERT INTO guard_entities (kind, key, attrs)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (kind, key) DO NOTHING
                """,
                kind,
                key,
                json.dumps(attrs or {}),
            )
            row = await conn.fetchrow(
                "SELECT attrs FROM guard_entities WHERE kind = $1 AND key = $2",
                kind,
                key,
            )
        return _decode_attrs(row["attrs"]) if row else {}

    # ------------------------------------------------------------------
    # Detections
    # ------------------------------------------------------------------

    async def record_detection(self, event: MessageEvent, analysis: ThreatAnalysis) -> None:
        """Insert one scored message."""
        primary = analysis.primary_signal
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                INSERT INTO threat_detections
                    (community_id, channel_id, message_id, user_id, threat_type,
                     score, suggested_action, signals, iocs)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9::jsonb)
                """,
                event.community_id or 0,
                event.channel_id,
                event.message_id,
                event.author_id,
                primary.kind.value if primary else "unknown",
                analysis.aggregate_score,
                analysis.suggested_action.value,
                json.dumps([s.to_dict() for s in analysis.signals], default=str),
                json.dumps(analysis.iocs.to_dict()),
            )
        log.debug("threat_detection_recorded", message_id=event.message_id)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def record_alert(self, alert: IncidentAlert) -> None:
        """Insert *alert*, or refresh its mutable columns if it exists."""
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            await conn.execute(
                """
                INSERT INTO incident_alerts
                    (id, community_id, channel_id, event_id, subject_user_id,
                     threat_type, score, suggested_action, description,
                     indicators, enrichment, status, alert_message_id, created_at)
                VALUES ($1, $2, $3, $4, $5,
                        $6, $7, $8, $9,
                        $10::jsonb, $11::jsonb, $12, $13, $14)
                ON CONFLICT (id) DO UPDATE
                SET status = EXCLUDED.status,
                    alert_message_id = EXCLUDED.alert_message_id,
                    enrichment = EXCLUDED.enrichment
                """,
                alert.id,
                alert.community_id,
                alert.channel_id,
                alert.event_id,
                alert.subject_user_id,
                alert.threat_type,
                alert.score,
                alert.suggested_action,
                alert.description,
                json.dumps(alert.indicators),
                json.dumps(alert.enrichment.to_dict()) if alert.enrichment else None,
                alert.status.value,
                alert.alert_message_id,
                alert.created_at,
            )
        log.debug("incident_alert_recorded", alert_id=alert.id)

    async def record_outcome(self, alert_id: str, outcome: ActionOutcome) -> None:
        """Store *outcome* and mark the alert resolved."""
        async with self._pool.acquire() as conn, conn.transaction():  # type: ignore[union-attr]
            await conn.execute(
                """
                INSERT INTO incident_outcomes (alert_id, action, status, analyst_id, message)
                VALUES ($1, $2, $3, $4, $5)
                """,
                alert_id,
                outcome.action,
                outcome.status.value,
                outcome.analyst_id,
                outcome.message,
            )
            await conn.execute(
                """
                UPDATE incident_alerts
                SET status = 'resolved', resolved_at = now()
                WHERE id = $1
                """,
                alert_id,
            )
        log.debug("incident_outcome_recorded", alert_id=alert_id, status=outcome.status.value)

    async def count_active(self, kind: str, subject_id: int, community_id: int) -> int:
        """Count *subject_id*'s records of *kind* in *community_id*.

        ``"incident"`` counts open alerts; ``"alert"`` counts every alert.

        Raises:
            ValueError: Unknown *kind*.
        """
        query = _COUNT_ACTIVE_SQL.get(kind)
        if query is None:
            raise ValueError(f"Unknown entity kind: {kind}")
        async with self._pool.acquire() as conn:  # type: ignore[union-attr]
            count = await conn.fetchval(query, subject_id, community_id)
        return int(count or 0)
