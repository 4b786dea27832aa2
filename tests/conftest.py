"""Pytest fixtures for ChatGuard tests."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from chatguard.platform.base import RemediationResult
from chatguard.platform.events import AttachmentRef, MemberJoinEvent, MemberRef, MessageEvent


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any imports.

    Ensures that Settings can be constructed without validation errors.
    """
    os.environ.setdefault("DISCORD_TOKEN", "test-discord-token-placeholder")
    # Keep tests from writing log files
    os.environ.setdefault("LOG_TO_FILE", "false")

    from chatguard.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def mock_settings():
    """Settings with every optional integration disabled."""
    from chatguard.config import Settings

    return Settings(
        discord_token="test-discord-token",
        environment="test",
        log_level="DEBUG",
        log_to_file=False,
    )


class InMemoryCounterStore:
    """Dict-backed :class:`~chatguard.storage.base.CounterStore` for tests.

    Expiry is recorded but never enforced; tests that care about TTLs read
    them back through :meth:`ttl`.
    """

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.ttls: dict[str, int] = {}
        self.windows: dict[str, dict[str, float]] = {}
        self.lists: dict[str, list[str]] = {}

    async def increment_with_ttl(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        self.values[key] = int(self.values.get(key, 0)) + 1
        self.ttls.setdefault(key, ttl_seconds)
        return self.values[key], self.ttls[key]

    async def record_in_window(
        self, key: str, member: str, timestamp: float, window_seconds: float, ttl_seconds: int
    ) -> int:
        window = self.windows.setdefault(key, {})
        cutoff = timestamp - window_seconds
        for stale in [m for m, ts in window.items() if ts < cutoff]:
            del window[stale]
        window[member] = timestamp
        self.ttls[key] = ttl_seconds
        return len(window)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if key in self.values:
            return False
        self.values[key] = value
        self.ttls[key] = ttl_seconds
        return True

    async def get(self, key: str) -> str | None:
        value = self.values.get(key)
        return None if value is None else str(value)

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self.values[key] = value
        self.ttls[key] = ttl_seconds

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            found = False
            for bucket in (self.values, self.windows, self.lists):
                if key in bucket:
                    del bucket[key]
                    found = True
            self.ttls.pop(key, None)
            removed += int(found)
        return removed

    async def push_capped(
        self, key: str, value: str, max_length: int, ttl_seconds: int
    ) -> None:
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        del items[max_length:]
        self.ttls[key] = ttl_seconds

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        items = self.lists.get(key, [])
        stop = None if end == -1 else end + 1
        return items[start:stop]

    async def ttl(self, key: str) -> int:
        return self.ttls.get(key, -2)


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def mock_platform():
    """AsyncMock platform gateway whose remediation calls all succeed."""
    platform = AsyncMock()
    platform.delete_message = AsyncMock(return_value=RemediationResult.ok("delete_message"))
    platform.timeout_member = AsyncMock(return_value=RemediationResult.ok("timeout_member"))
    platform.ban_member = AsyncMock(return_value=RemediationResult.ok("ban_member"))
    platform.remove_member = AsyncMock(return_value=RemediationResult.ok("remove_member"))
    platform.raise_verification_level = AsyncMock(
        return_value=RemediationResult.ok("raise_verification_level")
    )
    platform.list_recent_members = AsyncMock(return_value=[])
    platform.send_notice = AsyncMock(return_value=True)
    platform.post_alert = AsyncMock(return_value=555)
    platform.update_alert = AsyncMock(return_value=True)
    return platform


@pytest.fixture
def make_message():
    """Factory for :class:`MessageEvent` with sensible defaults."""

    def _make(content: str = "hello there", **overrides: Any) -> MessageEvent:
        fields: dict[str, Any] = {
            "message_id": 1001,
            "channel_id": 2002,
            "community_id": 3003,
            "author_id": 4004,
            "author_name": "suspect#0001",
            "author_is_bot": False,
            "content": content,
            "attachments": (),
            "created_at": datetime(2024, 1, 1, tzinfo=UTC),
        }
        fields.update(overrides)
        return MessageEvent(**fields)

    return _make


@pytest.fixture
def make_attachment():
    def _make(**overrides: Any) -> AttachmentRef:
        fields: dict[str, Any] = {
            "filename": "invoice.exe",
            "size": 1024,
            "url": "https://cdn.example.com/invoice.exe",
            "content_type": "application/octet-stream",
            "sha256": "a" * 64,
        }
        fields.update(overrides)
        return AttachmentRef(**fields)

    return _make


@pytest.fixture
def make_join():
    """Factory for :class:`MemberJoinEvent`; accounts are 30 days old by default."""

    def _make(
        user_id: int = 9001,
        *,
        community_id: int = 3003,
        account_age: timedelta = timedelta(days=30),
        is_bot: bool = False,
    ) -> MemberJoinEvent:
        now = datetime.now(UTC)
        return MemberJoinEvent(
            community_id=community_id,
            member=MemberRef(
                user_id=user_id,
                username=f"user{user_id}",
                is_bot=is_bot,
                account_created_at=now - account_age,
                joined_at=now,
            ),
            joined_at=now,
        )

    return _make
