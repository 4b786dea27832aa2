"""Sliding-window mass-join (raid) detection and mitigation.

Join timestamps live in a per-community sorted set in the shared counter
store, so every process counts the same window.  Mitigation is guarded by a
short-lived "in progress" flag so a burst of raid joins triggers one mass
removal, not one per join.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from chatguard import metrics
from chatguard.logging import get_logger
from chatguard.platform.base import PlatformGateway
from chatguard.platform.events import MemberRef
from chatguard.storage.base import CounterStore

log = get_logger("chatguard.raid.detector")

DEFAULT_JOIN_THRESHOLD = 10
DEFAULT_WINDOW_SECONDS = 10
DEFAULT_MIN_ACCOUNT_AGE_DAYS = 7.0
DEFAULT_MITIGATION_TTL_SECONDS = 60

RECENT_JOIN_SECONDS = 60
RAID_EVENT_HISTORY = 100
RAID_EVENT_TTL_SECONDS = 30 * 24 * 60 * 60

MITIGATION_REASON = "Auto-mitigation: Raid detected"


@dataclass(frozen=True)
class MitigationSummary:
    """What one mitigation run did."""

    community_id: int
    skipped: bool = False
    verification_raised: bool = False
    attempted: int = 0
    removed: int = 0
    failed: int = 0
    triggered_by: int | None = None


@dataclass(frozen=True)
class RaidStats:
    """Raid history of one community (last 100 raids, 30 days)."""

    total_raids: int = 0
    last_raid_at: datetime | None = None
    total_removed: int = 0


class RaidDetector:
    """Count joins per community and mitigate raids."""

    def __init__(
        self,
        store: CounterStore,
        platform: PlatformGateway,
        *,
        join_threshold: int = DEFAULT_JOIN_THRESHOLD,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        min_account_age_days: float = DEFAULT_MIN_ACCOUNT_AGE_DAYS,
        mitigation_ttl_seconds: int = DEFAULT_MITIGATION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the detector.

        Args:
            store: Shared counter store holding join windows and flags.
            platform: Gateway used for mitigation.
            join_threshold: Joins within the window that constitute a raid.
            window_seconds: Sliding window length.
            min_account_age_days: Default minimum account age.
            mitigation_ttl_seconds: How long a mitigation blocks re-entry.
            clock: Wall-clock time source (epoch seconds).
        """
        if join_threshold < 1 or window_seconds < 1:
            raise ValueError("join_threshold and window_seconds must be at least 1")
        self._store = store
        self._platform = platform
        self._join_threshold = join_threshold
        self._window_seconds = window_seconds
        self._min_account_age_days = min_account_age_days
        self._mitigation_ttl = mitigation_ttl_seconds
        self._clock = clock
        # community_id -> local guard expiry (epoch seconds)
        self._local_mitigations: dict[int, float] = {}

    @staticmethod
    def _joins_key(community_id: int) -> str:
        return f"anti_raid:joins:{community_id}"

    @staticmethod
    def _events_key(community_id: int) -> str:
        return f"anti_raid:events:{community_id}"

    @staticmethod
    def _mitigation_key(community_id: int) -> str:
        return f"anti_raid:mitigating:{community_id}"

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def record_join_and_check(self, community_id: int) -> bool:
        """Record a join and report whether the window now holds a raid.

        Returns:
            ``True`` when the join count within the window reaches the
            threshold.  Store failures return ``False`` (fail open).
        """
        now = self._clock()
        member = f"{now:.6f}-{uuid.uuid4().hex[:8]}"
        try:
            count = await self._store.record_in_window(
                self._joins_key(community_id),
                member,
                now,
                self._window_seconds,
                self._window_seconds * 2,
            )
        except Exception as e:
            log.error("join_window_update_failed", community_id=community_id, error=str(e))
            return False

        is_raid = count >= self._join_threshold
        if is_raid:
            log.warning(
                "raid_detected",
                community_id=community_id,
                join_count=count,
                window_seconds=self._window_seconds,
                threshold=self._join_threshold,
            )
        return is_raid

    def validate_account_age(
        self, account_created_at: datetime, min_age_days: float | None = None
    ) -> bool:
        """Return ``True`` if the account is at least *min_age_days* old.

        Naive datetimes are treated as UTC.
        """
        min_age = self._min_account_age_days if min_age_days is None else min_age_days
        if account_created_at.tzinfo is None:
            account_created_at = account_created_at.replace(tzinfo=UTC)
        now = datetime.fromtimestamp(self._clock(), UTC)
        age_days = (now - account_created_at) / timedelta(days=1)
        meets = age_days >= min_age
        if not meets:
            log.debug(
                "account_age_check_failed",
                age_days=round(age_days, 1),
                required_days=min_age,
            )
        return meets

    # ------------------------------------------------------------------
    # Mitigation
    # ------------------------------------------------------------------

    async def _claim_mitigation(self, community_id: int) -> bool:
        now = self._clock()
        if self._local_mitigations.get(community_id, 0.0) > now:
            return False
        self._local_mitigations[community_id] = now + self._mitigation_ttl

        try:
            claimed = await self._store.set_if_absent(
                self._mitigation_key(community_id), str(now), self._mitigation_ttl
            )
        except Exception as e:
            # Local guard still prevents re-entry in this process
            log.error("mitigation_flag_failed", community_id=community_id, error=str(e))
            return True
        return claimed

    async def trigger_mitigation(
        self, community_id: int, triggering_member: MemberRef | None = None
    ) -> MitigationSummary:
        """Raise the verification barrier and remove recent joiners.

        Re-entry for the same community within the mitigation TTL is a no-op
        returning a ``skipped`` summary.  Per-member failures are counted,
        never raised.
        """
        triggered_by = triggering_member.user_id if triggering_member else None
        if not await self._claim_mitigation(community_id):
            log.info("raid_mitigation_skipped", community_id=community_id)
            return MitigationSummary(community_id, skipped=True, triggered_by=triggered_by)

        log.warning("raid_mitigation_started", community_id=community_id)
        metrics.record_raid()

        raised = await self._platform.raise_verification_level(
            community_id, reason=MITIGATION_REASON
        )
        if not raised.success:
            log.error("verification_raise_failed", community_id=community_id, detail=raised.detail)

        since = datetime.fromtimestamp(self._clock() - RECENT_JOIN_SECONDS, UTC)
        targets = await self._recent_targets(community_id, since, triggering_member)

        removed = failed = 0
        for member in targets:
            result = await self._platform.remove_member(
                community_id, member.user_id, reason=MITIGATION_REASON
            )
            if result.success:
                removed += 1
            else:
                failed += 1
                log.error(
                    "raid_member_removal_failed",
                    community_id=community_id,
                    user_id=member.user_id,
                    detail=result.detail,
                )

        summary = MitigationSummary(
            community_id=community_id,
            verification_raised=raised.success,
            attempted=len(targets),
            removed=removed,
            failed=failed,
            triggered_by=triggered_by,
        )
        log.warning(
            "raid_mitigation_complete",
            community_id=community_id,
            removed=removed,
            attempted=len(targets),
        )

        await self._record_raid(summary)
        await self._platform.send_notice(community_id, _summary_notice(summary))
        return summary

    async def _recent_targets(
        self, community_id: int, since: datetime, triggering_member: MemberRef | None
    ) -> list[MemberRef]:
        try:
            members = await self._platform.list_recent_members(community_id, since)
        except Exception as e:
            log.error("recent_members_fetch_failed", community_id=community_id, error=str(e))
            members = []

        targets: dict[int, MemberRef] = {}
        for member in members:
            if member.is_bot:
                continue
            if member.joined_at is not None and member.joined_at < since:
                continue
            targets.setdefault(member.user_id, member)
        if triggering_member is not None and not triggering_member.is_bot:
            targets.setdefault(triggering_member.user_id, triggering_member)
        return list(targets.values())

    async def _record_raid(self, summary: MitigationSummary) -> None:
        event = json.dumps(
            {
                "timestamp": datetime.fromtimestamp(self._clock(), UTC).isoformat(),
                "community_id": summary.community_id,
                "removed_count": summary.removed,
                "attempted_count": summary.attempted,
                "trigger_user_id": summary.triggered_by,
                "verification_raised": summary.verification_raised,
                "mitigation_status": "auto_executed",
            }
        )
        try:
            await self._store.push_capped(
                self._events_key(summary.community_id),
                event,
                RAID_EVENT_HISTORY,
                RAID_EVENT_TTL_SECONDS,
            )
        except Exception as e:
            log.error("raid_event_record_failed", community_id=summary.community_id, error=str(e))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_raid_stats(self, community_id: int) -> RaidStats:
        """Summarise the recorded raid history; empty on store failure."""
        try:
            raw_events = await self._store.list_range(self._events_key(community_id))
        except Exception as e:
            log.error("raid_stats_failed", community_id=community_id, error=str(e))
            return RaidStats()

        events = []
        for raw in raw_events:
            try:
                events.append(json.loads(raw))
            except ValueError:
                log.warning("raid_event_malformed", community_id=community_id)
        if not events:
            return RaidStats()

        # Newest first
        return RaidStats(
            total_raids=len(events),
            last_raid_at=datetime.fromisoformat(events[0]["timestamp"]),
            total_removed=sum(int(e.get("removed_count", 0)) for e in events),
        )

    async def reset(self, community_id: int) -> None:
        """Clear the join window and any mitigation flag."""
        self._local_mitigations.pop(community_id, None)
        try:
            await self._store.delete(
                self._joins_key(community_id), self._mitigation_key(community_id)
            )
        except Exception as e:
            log.error("raid_reset_failed", community_id=community_id, error=str(e))
            return
        log.info("raid_detection_reset", community_id=community_id)


def _summary_notice(summary: MitigationSummary) -> str:
    verification = "raised" if summary.verification_raised else "could not be raised"
    lines = [
        "**Raid detected - auto-mitigation activated**",
        f"Verification level {verification}.",
        f"Removed {summary.removed}/{summary.attempted} recent members.",
    ]
    if summary.failed:
        lines.append(f"{summary.failed} removals failed; review manually.")
    lines.append("Review the audit log and verify legitimate users were not affected.")
    return "\n".join(lines)
