"""Interactive incident alerts and analyst actions.

A scored threat above the alert threshold becomes an :class:`IncidentAlert`
posted with four buttons (ban, timeout, delete, ignore).  Each button press
is routed back here by its ``chatguard:{action}:{alert_id}`` key and
resolves the alert exactly once: remediation failures still close the
alert, and a second press is answered with "already handled".
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from chatguard import metrics
from chatguard.incidents.models import (
    ActionOutcome,
    AnalystAction,
    IncidentAlert,
    OutcomeStatus,
    Resolution,
    parse_routing_key,
)
from chatguard.logging import get_logger
from chatguard.platform.base import PlatformGateway, RemediationResult

if TYPE_CHECKING:
    from chatguard.detection.models import ThreatAnalysis
    from chatguard.intel.models import EnrichmentRecord
    from chatguard.platform.events import MessageEvent
    from chatguard.storage.base import CounterStore, IncidentStore

log = get_logger("chatguard.incidents.dispatcher")

DEFAULT_ALERT_THRESHOLD = 50
DEFAULT_MAX_TRACKED_ALERTS = 1000
DEFAULT_CLAIM_TTL_SECONDS = 7 * 24 * 60 * 60

BAN_DELETE_MESSAGE_SECONDS = 24 * 60 * 60
TIMEOUT_DURATION = timedelta(hours=1)


class IncidentAlertDispatcher:
    """Create alerts and apply analyst actions to them."""

    def __init__(
        self,
        platform: PlatformGateway,
        *,
        store: IncidentStore | None = None,
        counters: CounterStore | None = None,
        alert_threshold: int = DEFAULT_ALERT_THRESHOLD,
        max_tracked_alerts: int = DEFAULT_MAX_TRACKED_ALERTS,
        claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            platform: Gateway used to post alerts and remediate.
            store: Incident persistence; failures are logged, never retried.
            counters: Optional shared store; when given, each alert is
                claimed there before remediation so that only one process
                acts on it.
            alert_threshold: Minimum aggregate score that creates an alert.
            max_tracked_alerts: In-flight alerts kept for button routing;
                the oldest are evicted first.
            claim_ttl_seconds: Lifetime of a cross-process claim.
        """
        self._platform = platform
        self._store = store
        self._counters = counters
        self._alert_threshold = alert_threshold
        self._max_tracked = max_tracked_alerts
        self._claim_ttl = claim_ttl_seconds
        self._alerts: OrderedDict[str, IncidentAlert] = OrderedDict()
        self._in_flight: set[str] = set()

    def get_alert(self, alert_id: str) -> IncidentAlert | None:
        return self._alerts.get(alert_id)

    def _register(self, alert: IncidentAlert) -> None:
        self._alerts[alert.id] = alert
        while len(self._alerts) > self._max_tracked:
            evicted_id, _ = self._alerts.popitem(last=False)
            log.debug("incident_alert_evicted", alert_id=evicted_id)

    async def _persist(
        self, operation: str, op: Callable[[], Awaitable[Any]], **context: Any
    ) -> Any:
        if self._store is None:
            return None
        try:
            return await op()
        except Exception as e:
            log.error("incident_persistence_failed", operation=operation, error=str(e), **context)
            return None

    # ------------------------------------------------------------------
    # Alert creation
    # ------------------------------------------------------------------

    async def create_alert(
        self,
        event: MessageEvent,
        analysis: ThreatAnalysis,
        enrichment: EnrichmentRecord | None = None,
    ) -> IncidentAlert | None:
        """Open an alert for *event* if its score reaches the alert threshold.

        Returns:
            The registered alert, or ``None`` below the threshold.
        """
        if analysis.aggregate_score < self._alert_threshold:
            return None

        community_id = event.community_id or 0
        store = self._store
        prior = 0
        if store is not None:
            await self._persist(
                "get_or_create",
                lambda: store.get_or_create(
                    "user",
                    f"{community_id}:{event.author_id}",
                    {"user_id": event.author_id, "username": event.author_name},
                ),
                user_id=event.author_id,
            )
            prior = (
                await self._persist(
                    "count_active",
                    lambda: store.count_active("incident", event.author_id, community_id),
                    user_id=event.author_id,
                )
                or 0
            )

        alert = IncidentAlert.from_analysis(
            event, analysis, enrichment=enrichment, prior_incidents=prior
        )
        self._register(alert)
        metrics.record_alert(alert.score)

        try:
            alert.alert_message_id = await self._platform.post_alert(alert)
        except Exception as e:
            log.error("incident_alert_post_failed", alert_id=alert.id, error=str(e))

        if store is not None:
            await self._persist(
                "record_alert", lambda: store.record_alert(alert), alert_id=alert.id
            )

        log.warning(
            "incident_alert_created",
            alert_id=alert.id,
            community_id=alert.community_id,
            subject_user_id=alert.subject_user_id,
            threat_type=alert.threat_type,
            score=round(alert.score, 2),
            prior_incidents=prior,
            posted=alert.alert_message_id is not None,
        )
        return alert

    # ------------------------------------------------------------------
    # Analyst actions
    # ------------------------------------------------------------------

    async def handle_routing_key(self, key: str, analyst_id: int) -> ActionOutcome:
        """Parse a button ``custom_id`` and apply its action."""
        parsed = parse_routing_key(key)
        if parsed is None:
            log.warning("invalid_routing_key", key=key, analyst_id=analyst_id)
            return ActionOutcome(
                alert_id="",
                action="",
                status=OutcomeStatus.INVALID,
                analyst_id=analyst_id,
                message="Unknown or malformed action.",
            )
        action, alert_id = parsed
        return await self.handle_action(alert_id, action, analyst_id)

    async def handle_action(
        self, alert_id: str, action: AnalystAction | str, analyst_id: int
    ) -> ActionOutcome:
        """Apply *action* to the alert and resolve it.

        Returns:
            The outcome, always with a human-readable message.  A resolved or
            currently-processing alert yields ``already_handled`` without any
            remediation call.
        """
        try:
            action = AnalystAction(action)
        except ValueError:
            return ActionOutcome(
                alert_id=alert_id,
                action=str(action),
                status=OutcomeStatus.INVALID,
                analyst_id=analyst_id,
                message=f"Unknown action: {action}",
            )

        alert = self._alerts.get(alert_id)
        if alert is None:
            log.warning("incident_alert_not_found", alert_id=alert_id, action=action.value)
            return ActionOutcome(
                alert_id=alert_id,
                action=action.value,
                status=OutcomeStatus.NOT_FOUND,
                analyst_id=analyst_id,
                message="This alert is no longer tracked; handle it manually.",
            )

        if not alert.is_open or alert_id in self._in_flight:
            return self._already_handled(alert, action, analyst_id)

        self._in_flight.add(alert_id)
        try:
            if not await self._claim(alert, action, analyst_id):
                return self._already_handled(alert, action, analyst_id)

            log.info(
                "analyst_action_started",
                alert_id=alert_id,
                action=action.value,
                analyst_id=analyst_id,
            )
            try:
                result = await self._remediate(alert, action, analyst_id)
            except Exception as e:
                log.error("remediation_error", alert_id=alert_id, action=action.value, error=str(e))
                result = RemediationResult.failed(action.value, str(e))

            status = OutcomeStatus.SUCCEEDED if result.success else OutcomeStatus.FAILED
            outcome = ActionOutcome(
                alert_id=alert_id,
                action=action.value,
                status=status,
                analyst_id=analyst_id,
                message=_outcome_message(action, alert, result),
            )
            alert.resolve(
                Resolution(
                    action=action, analyst_id=analyst_id, status=status, detail=result.detail
                )
            )
        finally:
            self._in_flight.discard(alert_id)

        metrics.record_analyst_action(action.value, outcome.status.value)
        log.info(
            "incident_alert_resolved",
            alert_id=alert_id,
            action=action.value,
            analyst_id=analyst_id,
            status=outcome.status.value,
        )

        store = self._store
        if store is not None:
            await self._persist(
                "record_outcome", lambda: store.record_outcome(alert_id, outcome), alert_id=alert_id
            )
        try:
            await self._platform.update_alert(alert)
        except Exception as e:
            log.error("incident_alert_update_failed", alert_id=alert_id, error=str(e))

        return outcome

    def _already_handled(
        self, alert: IncidentAlert, action: AnalystAction, analyst_id: int
    ) -> ActionOutcome:
        resolution = alert.resolution
        if resolution is not None:
            message = (
                f"Already handled: {resolution.action.value} by <@{resolution.analyst_id}> "
                f"({resolution.status.value})."
            )
        else:
            message = "Already being handled by another analyst."
        log.info("incident_alert_already_handled", alert_id=alert.id, action=action.value)
        return ActionOutcome(
            alert_id=alert.id,
            action=action.value,
            status=OutcomeStatus.ALREADY_HANDLED,
            analyst_id=analyst_id,
            message=message,
        )

    async def _claim(self, alert: IncidentAlert, action: AnalystAction, analyst_id: int) -> bool:
        if self._counters is None:
            return True
        try:
            return await self._counters.set_if_absent(
                f"incident:claim:{alert.id}", f"{action.value}:{analyst_id}", self._claim_ttl
            )
        except Exception as e:
            # The in-process guard still holds
            log.error("incident_claim_failed", alert_id=alert.id, error=str(e))
            return True

    async def _remediate(
        self, alert: IncidentAlert, action: AnalystAction, analyst_id: int
    ) -> RemediationResult:
        reason = f"Incident Response: Threat detected (analyst: {analyst_id})"

        if action is AnalystAction.BAN:
            return await self._platform.ban_member(
                alert.community_id,
                alert.subject_user_id,
                reason=reason,
                delete_message_seconds=BAN_DELETE_MESSAGE_SECONDS,
            )

        if action is AnalystAction.TIMEOUT:
            result = await self._platform.timeout_member(
                alert.community_id, alert.subject_user_id, TIMEOUT_DURATION, reason=reason
            )
            if not result.success:
                return result
            deleted = await self._platform.delete_message(
                alert.channel_id, alert.event_id, reason=reason
            )
            if not deleted.success:
                return RemediationResult.ok(
                    action.value, f"timed out; message not deleted: {deleted.detail}"
                )
            return result

        if action is AnalystAction.DELETE:
            return await self._platform.delete_message(
                alert.channel_id, alert.event_id, reason=reason
            )

        log.info("incident_marked_false_positive", alert_id=alert.id, analyst_id=analyst_id)
        return RemediationResult.ok(action.value, "marked as false positive")


def _outcome_message(
    action: AnalystAction, alert: IncidentAlert, result: RemediationResult
) -> str:
    user = f"<@{alert.subject_user_id}>"
    if not result.success:
        verb = {
            AnalystAction.BAN: "ban user",
            AnalystAction.TIMEOUT: "timeout user",
            AnalystAction.DELETE: "delete message",
            AnalystAction.IGNORE: "ignore alert",
        }[action]
        detail = f": {result.detail}" if result.detail else ""
        return f"Failed to {verb}{detail}. The alert has been closed."
    if action is AnalystAction.BAN:
        return f"User {user} has been banned."
    if action is AnalystAction.TIMEOUT:
        note = f" ({result.detail})" if result.detail else ""
        return f"User {user} has been timed out for 1 hour{note}."
    if action is AnalystAction.DELETE:
        return "Message deleted."
    return "Marked as false positive."
