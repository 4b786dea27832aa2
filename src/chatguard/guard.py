"""Inbound event routing.

:class:`ChatGuard` is the single entry point the platform boundary calls
for each decoded event.  Every handler catches and logs unexpected errors
so one bad event never takes down the event loop.
"""

from __future__ import annotations

from chatguard import metrics
from chatguard.detection.engine import ThreatScoringEngine
from chatguard.detection.models import (
    IndicatorType,
    SuggestedAction,
    ThreatAnalysis,
    ThreatKind,
    ThreatSignal,
)
from chatguard.incidents.dispatcher import BAN_DELETE_MESSAGE_SECONDS, IncidentAlertDispatcher
from chatguard.intel.models import EnrichmentRecord
from chatguard.intel.service import ThreatIntelService
from chatguard.logging import get_logger
from chatguard.platform.base import PlatformGateway
from chatguard.platform.events import (
    AuditLogEvent,
    ButtonClickEvent,
    MemberJoinEvent,
    MessageEvent,
)
from chatguard.raid.detector import MITIGATION_REASON, RaidDetector
from chatguard.storage.base import IncidentStore

log = get_logger("chatguard.guard")

HIGH_SEVERITY_AUDIT_ACTIONS = frozenset(
    {
        "member_ban_add",
        "member_kick",
        "role_delete",
        "channel_delete",
        "guild_update",
        "member_role_update",
    }
)

KNOWN_IOC_BONUS = 20
MAX_INTEL_LOOKUPS = 3

AUTO_ACTION_REASON = "Automated threat detection: High-risk content"
YOUNG_ACCOUNT_REASON = "Account age below minimum requirement"


class ChatGuard:
    """Route platform events to detection, intel, raid and incident components."""

    def __init__(
        self,
        *,
        engine: ThreatScoringEngine,
        dispatcher: IncidentAlertDispatcher,
        platform: PlatformGateway,
        intel: ThreatIntelService | None = None,
        raid: RaidDetector | None = None,
        incidents: IncidentStore | None = None,
        auto_action_threshold: int = 80,
        draft_record_threshold: int = 90,
        draft_records_enabled: bool = False,
        auto_kick_new_accounts: bool = False,
    ) -> None:
        """Initialize the router.

        Args:
            engine: Threat scoring engine.
            dispatcher: Incident alert dispatcher.
            platform: Gateway for automated responses.
            intel: Intelligence enrichment, or ``None`` to skip it.
            raid: Raid detector, or ``None`` when anti-raid is disabled.
            incidents: Persistence for every scored message, or ``None``.
            auto_action_threshold: Score at which the suggested action is
                executed without an analyst.
            draft_record_threshold: Score at which a novel threat is shared
                as a draft intel record.
            draft_records_enabled: Whether draft records are created at all.
            auto_kick_new_accounts: Remove joiners below the minimum account
                age.
        """
        self._engine = engine
        self._dispatcher = dispatcher
        self._platform = platform
        self._intel = intel
        self._raid = raid
        self._incidents = incidents
        self._auto_action_threshold = auto_action_threshold
        self._draft_record_threshold = draft_record_threshold
        self._draft_records_enabled = draft_records_enabled
        self._auto_kick_new_accounts = auto_kick_new_accounts

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def on_message(self, event: MessageEvent) -> ThreatAnalysis | None:
        """Analyse a message and respond to whatever it scores.

        Returns:
            The final analysis, or ``None`` if the message was skipped or
            handling failed.
        """
        if event.author_is_bot or event.community_id is None:
            return None

        try:
            return await self._handle_message(event, event.community_id)
        except Exception as e:
            log.error(
                "message_handling_failed",
                message_id=event.message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def _handle_message(self, event: MessageEvent, community_id: int) -> ThreatAnalysis:
        metrics.record_message()
        analysis = await self._engine.analyze(
            event.content,
            event.attachments,
            community_id=community_id,
            channel_id=event.channel_id,
            user_id=event.author_id,
            message_id=event.message_id,
        )
        if analysis.aggregate_score <= 0:
            return analysis

        enrichment = await self._enrich(analysis)
        if enrichment is not None:
            analysis = analysis.with_signals(_known_ioc_signal(analysis, enrichment))

        primary = analysis.primary_signal
        metrics.record_threat_detection(
            primary.kind.value if primary else "unknown", analysis.aggregate_score
        )
        await self._record_detection(event, analysis)

        log.info(
            "threat_detected",
            message_id=event.message_id,
            score=round(analysis.aggregate_score, 2),
            action=analysis.suggested_action.value,
            threshold=self._auto_action_threshold,
        )

        action_taken = "none"
        if analysis.aggregate_score >= self._auto_action_threshold:
            action_taken = await self._auto_respond(event, community_id, analysis)

        await self._dispatcher.create_alert(event, analysis, enrichment)

        if self._intel is not None:
            if enrichment is not None:
                await self._intel.report_sighting(enrichment.indicator, str(community_id))
            elif (
                self._draft_records_enabled
                and analysis.aggregate_score >= self._draft_record_threshold
            ):
                signal = _shareable_signal(analysis)
                if signal is not None:
                    await self._intel.create_record(signal, str(community_id))

        log.info(
            "threat_processing_complete",
            message_id=event.message_id,
            action_taken=action_taken,
        )
        return analysis

    async def _record_detection(self, event: MessageEvent, analysis: ThreatAnalysis) -> None:
        if self._incidents is None:
            return
        try:
            await self._incidents.record_detection(event, analysis)
        except Exception as e:
            log.error(
                "detection_persistence_failed", message_id=event.message_id, error=str(e)
            )

    async def _enrich(self, analysis: ThreatAnalysis) -> EnrichmentRecord | None:
        if self._intel is None or not self._intel.enabled:
            return None

        candidates = [(url, IndicatorType.URL) for url in analysis.iocs.urls]
        candidates += [(h, IndicatorType.HASH) for h in analysis.iocs.hashes]
        candidates += [
            (s.indicator, IndicatorType.HASH)
            for s in analysis.signals
            if s.kind is ThreatKind.MALWARE_ATTACHMENT
        ]

        for indicator, indicator_type in candidates[:MAX_INTEL_LOOKUPS]:
            record = await self._intel.lookup(indicator, indicator_type)
            if record is not None:
                log.info(
                    "intel_match_found",
                    indicator=indicator,
                    source=record.source.value,
                    record_id=record.record_id,
                )
                return record
        return None

    async def _auto_respond(
        self, event: MessageEvent, community_id: int, analysis: ThreatAnalysis
    ) -> str:
        action = analysis.suggested_action
        if action is SuggestedAction.BAN_USER:
            result = await self._platform.ban_member(
                community_id,
                event.author_id,
                reason=AUTO_ACTION_REASON,
                delete_message_seconds=BAN_DELETE_MESSAGE_SECONDS,
            )
        elif action is SuggestedAction.DELETE_MESSAGE:
            result = await self._platform.delete_message(
                event.channel_id, event.message_id, reason=AUTO_ACTION_REASON
            )
        else:
            return "none"

        if not result.success:
            log.warning(
                "automated_response_failed",
                action=action.value,
                message_id=event.message_id,
                detail=result.detail,
            )
            return "none"

        log.info("automated_response_executed", action=action.value, message_id=event.message_id)
        return action.value

    # ------------------------------------------------------------------
    # Member joins
    # ------------------------------------------------------------------

    async def on_member_join(self, event: MemberJoinEvent) -> bool:
        """Check account age and the join rate; mitigate raids.

        Returns:
            ``True`` if this join was part of a raid.
        """
        if self._raid is None:
            return False

        member = event.member
        try:
            if member.account_created_at is not None and not self._raid.validate_account_age(
                member.account_created_at
            ):
                log.warning(
                    "account_age_check_failed",
                    community_id=event.community_id,
                    user_id=member.user_id,
                    created_at=member.account_created_at.isoformat(),
                )
                if self._auto_kick_new_accounts:
                    result = await self._platform.remove_member(
                        event.community_id, member.user_id, reason=YOUNG_ACCOUNT_REASON
                    )
                    log.info(
                        "young_account_removed",
                        user_id=member.user_id,
                        success=result.success,
                    )
                return False

            is_raid = await self._raid.record_join_and_check(event.community_id)
            if is_raid:
                summary = await self._raid.trigger_mitigation(event.community_id, member)
                if summary.skipped:
                    # Mitigation already running: remove this joiner as well
                    await self._platform.remove_member(
                        event.community_id, member.user_id, reason=MITIGATION_REASON
                    )

            log.info(
                "member_join_processed",
                community_id=event.community_id,
                user_id=member.user_id,
                raid=is_raid,
            )
            return is_raid
        except Exception as e:
            log.error(
                "member_join_handling_failed",
                community_id=event.community_id,
                user_id=member.user_id,
                error=str(e),
            )
            return False

    # ------------------------------------------------------------------
    # Buttons and audit log
    # ------------------------------------------------------------------

    async def on_button_click(self, event: ButtonClickEvent) -> str:
        """Apply an analyst's button press; always return a message for them."""
        try:
            outcome = await self._dispatcher.handle_routing_key(event.custom_id, event.user_id)
        except Exception as e:
            log.error("button_handling_failed", custom_id=event.custom_id, error=str(e))
            return "Something went wrong handling this action. Check the logs."
        return outcome.message

    async def on_audit_log_entry(self, event: AuditLogEvent) -> bool:
        """Flag high-severity moderation actions.

        Returns:
            ``True`` if the entry's action is high severity.
        """
        try:
            high_severity = event.action in HIGH_SEVERITY_AUDIT_ACTIONS
            if high_severity:
                log.warning(
                    "high_severity_audit_action",
                    community_id=event.community_id,
                    action=event.action,
                    actor_id=event.actor_id,
                    target_id=event.target_id,
                    reason=event.reason,
                )
            else:
                log.debug("audit_log_entry", community_id=event.community_id, action=event.action)
            return high_severity
        except Exception as e:
            log.error("audit_log_handling_failed", entry_id=event.entry_id, error=str(e))
            return False


def _known_ioc_signal(analysis: ThreatAnalysis, record: EnrichmentRecord) -> ThreatSignal:
    indicator_type = (
        IndicatorType.URL if record.indicator in analysis.iocs.urls else IndicatorType.HASH
    )
    return ThreatSignal(
        kind=ThreatKind.KNOWN_IOC,
        score=min(analysis.aggregate_score + KNOWN_IOC_BONUS, 100.0),
        indicator=record.indicator,
        indicator_type=indicator_type,
        source=record.source,
        description=f"Known indicator: {record.classification}",
        metadata={"record_id": record.record_id, "tags": list(record.tags)},
    )


def _shareable_signal(analysis: ThreatAnalysis) -> ThreatSignal | None:
    """Strongest signal whose indicator can be shared (not raw message text)."""
    shareable = [
        s for s in analysis.signals if s.indicator_type is not IndicatorType.MESSAGE_CONTENT
    ]
    if not shareable:
        return None
    return max(shareable, key=lambda s: s.score)
