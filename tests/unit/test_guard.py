"""Tests for the ChatGuard event router."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatguard import metrics
from chatguard.detection.models import (
    IndicatorType,
    IOCSet,
    SignalSource,
    SuggestedAction,
    ThreatAnalysis,
    ThreatKind,
    ThreatSignal,
)
from chatguard.guard import (
    AUTO_ACTION_REASON,
    HIGH_SEVERITY_AUDIT_ACTIONS,
    MAX_INTEL_LOOKUPS,
    YOUNG_ACCOUNT_REASON,
    ChatGuard,
)
from chatguard.incidents.models import ActionOutcome, OutcomeStatus
from chatguard.intel.models import EnrichmentRecord
from chatguard.platform.base import RemediationResult
from chatguard.platform.events import AuditLogEvent, ButtonClickEvent
from chatguard.raid.detector import MITIGATION_REASON, MitigationSummary

URL = "https://evil.example.com/x"


def _signal(
    score: float,
    kind: ThreatKind = ThreatKind.PHISHING_URL,
    indicator: str = URL,
    indicator_type: IndicatorType = IndicatorType.URL,
) -> ThreatSignal:
    return ThreatSignal(
        kind=kind,
        score=score,
        indicator=indicator,
        indicator_type=indicator_type,
        source=SignalSource.GOOGLE_SAFE_BROWSING,
        description="test",
    )


def _analysis(*signals: ThreatSignal, urls: tuple[str, ...] = (URL,)) -> ThreatAnalysis:
    return ThreatAnalysis.from_signals(list(signals), IOCSet(urls=urls))


def _record(indicator: str = URL) -> EnrichmentRecord:
    return EnrichmentRecord(
        source=SignalSource.MISP,
        record_id="42",
        classification="Phishing campaign",
        indicator=indicator,
        tags=("tlp:green",),
        confidence=90,
    )


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.analyze = AsyncMock(return_value=ThreatAnalysis.empty())
    return engine


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.create_alert = AsyncMock(return_value=None)
    dispatcher.handle_routing_key = AsyncMock()
    return dispatcher


@pytest.fixture
def intel():
    intel = MagicMock()
    intel.enabled = True
    intel.lookup = AsyncMock(return_value=None)
    intel.report_sighting = AsyncMock(return_value=True)
    intel.create_record = AsyncMock(return_value="draft-1")
    return intel


@pytest.fixture
def raid():
    raid = MagicMock()
    raid.validate_account_age = MagicMock(return_value=True)
    raid.record_join_and_check = AsyncMock(return_value=False)
    raid.trigger_mitigation = AsyncMock(return_value=MitigationSummary(3003, removed=5))
    return raid


@pytest.fixture
def guard(engine, dispatcher, mock_platform, intel, raid) -> ChatGuard:
    return ChatGuard(
        engine=engine,
        dispatcher=dispatcher,
        platform=mock_platform,
        intel=intel,
        raid=raid,
    )


# ===========================================================================
# Messages
# ===========================================================================


class TestOnMessage:
    @pytest.mark.asyncio
    async def test_skips_bots_and_direct_messages(self, guard, engine, make_message) -> None:
        assert await guard.on_message(make_message(author_is_bot=True)) is None
        assert await guard.on_message(make_message(community_id=None)) is None
        engine.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_clean_message_goes_no_further(
        self, guard, engine, dispatcher, intel, make_message
    ) -> None:
        analysis = await guard.on_message(make_message("hello"))
        assert analysis.aggregate_score == 0
        call = engine.analyze.await_args
        assert call.args == ("hello", ())
        assert call.kwargs["message_id"] == 1001
        intel.lookup.assert_not_awaited()
        dispatcher.create_alert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ban_user_verdict_is_executed(
        self, guard, engine, dispatcher, mock_platform, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(_signal(95))
        event = make_message(URL)

        analysis = await guard.on_message(event)

        assert analysis.suggested_action is SuggestedAction.BAN_USER
        mock_platform.ban_member.assert_awaited_once()
        call = mock_platform.ban_member.await_args
        assert call.args == (3003, 4004)
        assert call.kwargs["reason"] == AUTO_ACTION_REASON
        dispatcher.create_alert.assert_awaited_once_with(event, analysis, None)

    @pytest.mark.asyncio
    async def test_delete_verdict_is_executed(
        self, guard, engine, mock_platform, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(_signal(85))
        await guard.on_message(make_message(URL))
        mock_platform.delete_message.assert_awaited_once_with(
            2002, 1001, reason=AUTO_ACTION_REASON
        )
        mock_platform.ban_member.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_alert_only_below_auto_threshold(
        self, guard, engine, dispatcher, mock_platform, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(_signal(60))
        await guard.on_message(make_message(URL))
        mock_platform.delete_message.assert_not_awaited()
        mock_platform.ban_member.assert_not_awaited()
        dispatcher.create_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_auto_response_still_alerts(
        self, guard, engine, dispatcher, mock_platform, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(_signal(95))
        mock_platform.ban_member.return_value = RemediationResult.failed(
            "ban_member", "missing permissions"
        )
        await guard.on_message(make_message(URL))
        dispatcher.create_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_intel_match_boosts_score_and_reports_sighting(
        self, guard, engine, dispatcher, intel, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(_signal(60))
        intel.lookup.return_value = _record()

        analysis = await guard.on_message(make_message(URL))

        assert analysis.aggregate_score == 80
        assert analysis.primary_signal.kind is ThreatKind.KNOWN_IOC
        assert analysis.primary_signal.source is SignalSource.MISP
        intel.lookup.assert_awaited_once_with(URL, IndicatorType.URL)
        intel.report_sighting.assert_awaited_once_with(URL, "3003")
        intel.create_record.assert_not_awaited()
        assert dispatcher.create_alert.await_args.args[2] == intel.lookup.return_value

    @pytest.mark.asyncio
    async def test_known_ioc_score_is_capped(self, guard, engine, intel, make_message) -> None:
        engine.analyze.return_value = _analysis(_signal(95))
        intel.lookup.return_value = _record()
        analysis = await guard.on_message(make_message(URL))
        assert analysis.aggregate_score == 100

    @pytest.mark.asyncio
    async def test_lookups_are_bounded(self, guard, engine, intel, make_message) -> None:
        urls = tuple(f"https://site{i}.example.com" for i in range(5))
        engine.analyze.return_value = _analysis(_signal(60, indicator=urls[0]), urls=urls)
        await guard.on_message(make_message(" ".join(urls)))
        assert intel.lookup.await_count == MAX_INTEL_LOOKUPS

    @pytest.mark.asyncio
    async def test_attachment_hashes_are_looked_up(
        self, guard, engine, intel, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(
            _signal(
                70,
                kind=ThreatKind.MALWARE_ATTACHMENT,
                indicator="b" * 64,
                indicator_type=IndicatorType.HASH,
            ),
            urls=(),
        )
        await guard.on_message(make_message(""))
        intel.lookup.assert_awaited_once_with("b" * 64, IndicatorType.HASH)

    @pytest.mark.asyncio
    async def test_disabled_intel_is_skipped(self, guard, engine, intel, make_message) -> None:
        intel.enabled = False
        engine.analyze.return_value = _analysis(_signal(60))
        await guard.on_message(make_message(URL))
        intel.lookup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_draft_record_for_novel_high_score(
        self, engine, dispatcher, mock_platform, intel, make_message
    ) -> None:
        guard = ChatGuard(
            engine=engine,
            dispatcher=dispatcher,
            platform=mock_platform,
            intel=intel,
            draft_records_enabled=True,
        )
        engine.analyze.return_value = _analysis(
            _signal(40, kind=ThreatKind.SPAM, indicator_type=IndicatorType.MESSAGE_CONTENT),
            _signal(95),
        )
        await guard.on_message(make_message(URL))
        signal = intel.create_record.await_args.args[0]
        assert signal.score == 95
        assert intel.create_record.await_args.args[1] == "3003"

    @pytest.mark.asyncio
    async def test_no_draft_for_content_only(
        self, engine, dispatcher, mock_platform, intel, make_message
    ) -> None:
        guard = ChatGuard(
            engine=engine,
            dispatcher=dispatcher,
            platform=mock_platform,
            intel=intel,
            draft_records_enabled=True,
        )
        engine.analyze.return_value = _analysis(
            _signal(
                95,
                kind=ThreatKind.AI_CLASSIFICATION,
                indicator_type=IndicatorType.MESSAGE_CONTENT,
            ),
            urls=(),
        )
        await guard.on_message(make_message("claim now"))
        intel.create_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_errors_are_contained(self, guard, engine, make_message) -> None:
        engine.analyze.side_effect = RuntimeError("boom")
        assert await guard.on_message(make_message(URL)) is None

    @pytest.fixture
    def incident_store(self):
        store = MagicMock()
        store.record_detection = AsyncMock()
        return store

    @pytest.fixture
    def persisting_guard(self, engine, dispatcher, mock_platform, incident_store) -> ChatGuard:
        return ChatGuard(
            engine=engine, dispatcher=dispatcher, platform=mock_platform, incidents=incident_store
        )

    @pytest.mark.asyncio
    async def test_scored_message_below_alert_level_is_persisted(
        self, persisting_guard, engine, incident_store, make_message
    ) -> None:
        analysis = _analysis(_signal(30, ThreatKind.SPAM, "free", IndicatorType.MESSAGE_CONTENT))
        engine.analyze.return_value = analysis
        event = make_message("free stuff")

        await persisting_guard.on_message(event)

        incident_store.record_detection.assert_awaited_once_with(event, analysis)

    @pytest.mark.asyncio
    async def test_clean_message_is_not_persisted(
        self, persisting_guard, incident_store, make_message
    ) -> None:
        await persisting_guard.on_message(make_message("hello"))
        incident_store.record_detection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_stop_alerting(
        self, persisting_guard, engine, dispatcher, incident_store, make_message
    ) -> None:
        engine.analyze.return_value = _analysis(_signal(60))
        incident_store.record_detection.side_effect = OSError("db down")

        analysis = await persisting_guard.on_message(make_message(URL))

        assert analysis is not None
        dispatcher.create_alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_detection_metrics(self, guard, engine, make_message) -> None:
        labels = {"type": "phishing_url", "severity": "critical"}
        sample = "chatguard_security_threat_detections_total"
        before = metrics.REGISTRY.get_sample_value(sample, labels) or 0.0
        processed = metrics.REGISTRY.get_sample_value("chatguard_messages_processed_total")

        engine.analyze.return_value = _analysis(_signal(95))
        await guard.on_message(make_message(URL))

        assert metrics.REGISTRY.get_sample_value(sample, labels) == before + 1
        assert (
            metrics.REGISTRY.get_sample_value("chatguard_messages_processed_total")
            == processed + 1
        )


# ===========================================================================
# Member joins
# ===========================================================================


class TestOnMemberJoin:
    @pytest.mark.asyncio
    async def test_without_raid_detector(
        self, engine, dispatcher, mock_platform, make_join
    ) -> None:
        guard = ChatGuard(engine=engine, dispatcher=dispatcher, platform=mock_platform)
        assert await guard.on_member_join(make_join()) is False

    @pytest.mark.asyncio
    async def test_normal_join(self, guard, raid, make_join) -> None:
        assert await guard.on_member_join(make_join()) is False
        raid.record_join_and_check.assert_awaited_once_with(3003)
        raid.trigger_mitigation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_raid_triggers_mitigation(self, guard, raid, mock_platform, make_join) -> None:
        raid.record_join_and_check.return_value = True
        join = make_join()
        assert await guard.on_member_join(join) is True
        raid.trigger_mitigation.assert_awaited_once_with(3003, join.member)
        mock_platform.remove_member.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skipped_mitigation_removes_joiner(
        self, guard, raid, mock_platform, make_join
    ) -> None:
        raid.record_join_and_check.return_value = True
        raid.trigger_mitigation.return_value = MitigationSummary(3003, skipped=True)
        await guard.on_member_join(make_join(user_id=9100))
        mock_platform.remove_member.assert_awaited_once_with(
            3003, 9100, reason=MITIGATION_REASON
        )

    @pytest.mark.asyncio
    async def test_young_account_not_counted(self, guard, raid, mock_platform, make_join) -> None:
        raid.validate_account_age.return_value = False
        assert await guard.on_member_join(make_join(account_age=timedelta(days=1))) is False
        raid.record_join_and_check.assert_not_awaited()
        mock_platform.remove_member.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_young_account_kicked_when_enabled(
        self, engine, dispatcher, mock_platform, raid, make_join
    ) -> None:
        guard = ChatGuard(
            engine=engine,
            dispatcher=dispatcher,
            platform=mock_platform,
            raid=raid,
            auto_kick_new_accounts=True,
        )
        raid.validate_account_age.return_value = False
        await guard.on_member_join(make_join(user_id=9200, account_age=timedelta(days=1)))
        mock_platform.remove_member.assert_awaited_once_with(
            3003, 9200, reason=YOUNG_ACCOUNT_REASON
        )

    @pytest.mark.asyncio
    async def test_errors_are_contained(self, guard, raid, make_join) -> None:
        raid.record_join_and_check.side_effect = RuntimeError("boom")
        assert await guard.on_member_join(make_join()) is False


# ===========================================================================
# Buttons and audit log
# ===========================================================================


class TestOnButtonClick:
    @pytest.mark.asyncio
    async def test_returns_outcome_message(self, guard, dispatcher) -> None:
        dispatcher.handle_routing_key.return_value = ActionOutcome(
            alert_id="abc",
            action="ban",
            status=OutcomeStatus.SUCCEEDED,
            analyst_id=77,
            message="User <@4004> has been banned.",
        )
        click = ButtonClickEvent(custom_id="chatguard:ban:abc", user_id=77)
        assert await guard.on_button_click(click) == "User <@4004> has been banned."
        dispatcher.handle_routing_key.assert_awaited_once_with("chatguard:ban:abc", 77)

    @pytest.mark.asyncio
    async def test_error_message(self, guard, dispatcher) -> None:
        dispatcher.handle_routing_key.side_effect = RuntimeError("boom")
        click = ButtonClickEvent(custom_id="chatguard:ban:abc", user_id=77)
        message = await guard.on_button_click(click)
        assert message == "Something went wrong handling this action. Check the logs."


class TestOnAuditLogEntry:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", sorted(HIGH_SEVERITY_AUDIT_ACTIONS))
    async def test_high_severity(self, guard, action: str) -> None:
        entry = AuditLogEvent(community_id=3003, entry_id=1, action=action, actor_id=5)
        assert await guard.on_audit_log_entry(entry) is True

    @pytest.mark.asyncio
    async def test_routine_entry(self, guard) -> None:
        entry = AuditLogEvent(community_id=3003, entry_id=1, action="message_pin")
        assert await guard.on_audit_log_entry(entry) is False
