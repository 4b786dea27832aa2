"""Storage backends: Redis shared counters and PostgreSQL incident records."""

from chatguard.storage.base import CounterStore, IncidentStore
from chatguard.storage.postgres import PostgresIncidentStore
from chatguard.storage.redis_store import RedisCounterStore

__all__ = [
    "CounterStore",
    "IncidentStore",
    "PostgresIncidentStore",
    "RedisCounterStore",
]
