"""Incident alert data models and button routing keys."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from chatguard.detection.models import ThreatAnalysis
    from chatguard.intel.models import EnrichmentRecord
    from chatguard.platform.events import MessageEvent

ROUTING_PREFIX = "chatguard"


class AlertStatus(StrEnum):
    OPEN = "open"
    RESOLVED = "resolved"


class AnalystAction(StrEnum):
    """The four mutually exclusive ways to resolve an alert."""

    BAN = "ban"
    TIMEOUT = "timeout"
    DELETE = "delete"
    IGNORE = "ignore"


class OutcomeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_HANDLED = "already_handled"
    NOT_FOUND = "not_found"
    INVALID = "invalid"


def routing_key(action: AnalystAction, alert_id: str) -> str:
    """Build the button ``custom_id`` for *action* on alert *alert_id*."""
    return f"{ROUTING_PREFIX}:{action.value}:{alert_id}"


def parse_routing_key(key: str) -> tuple[AnalystAction, str] | None:
    """Split a routing key into ``(action, alert_id)``.

    Returns:
        ``None`` for anything that is not ``chatguard:{action}:{alert_id}``
        with a known action and a non-empty id.
    """
    parts = key.split(":")
    if len(parts) != 3 or parts[0] != ROUTING_PREFIX or not parts[2]:
        return None
    try:
        action = AnalystAction(parts[1])
    except ValueError:
        return None
    return action, parts[2]


@dataclass(frozen=True)
class ActionOutcome:
    """Final result of an analyst action, shown back to the analyst."""

    alert_id: str
    action: str
    status: OutcomeStatus
    analyst_id: int | None
    message: str

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "action": self.action,
            "status": self.status.value,
            "analyst_id": self.analyst_id,
            "message": self.message,
        }


@dataclass
class Resolution:
    """How and by whom an alert was closed."""

    action: AnalystAction
    analyst_id: int
    status: OutcomeStatus
    detail: str
    resolved_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class IncidentAlert:
    """In-flight representation of one alert.

    The persisted case record belongs to the incident store; this object
    only carries what button callbacks need.
    """

    community_id: int
    channel_id: int
    event_id: int
    subject_user_id: int
    threat_type: str
    score: float
    indicators: list[str] = field(default_factory=list)
    description: str = ""
    suggested_action: str = "none"
    enrichment: EnrichmentRecord | None = None
    prior_incidents: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: AlertStatus = AlertStatus.OPEN
    alert_message_id: int | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    resolution: Resolution | None = None

    @classmethod
    def from_analysis(
        cls,
        event: MessageEvent,
        analysis: ThreatAnalysis,
        *,
        enrichment: EnrichmentRecord | None = None,
        prior_incidents: int = 0,
    ) -> IncidentAlert:
        """Build an alert for *event* from its verdict."""
        primary = analysis.primary_signal
        indicators = [value for value, _ in analysis.iocs]
        if primary is not None and primary.indicator not in indicators:
            indicators.insert(0, primary.indicator)
        return cls(
            community_id=event.community_id or 0,
            channel_id=event.channel_id,
            event_id=event.message_id,
            subject_user_id=event.author_id,
            threat_type=primary.kind.value if primary else "unknown",
            score=analysis.aggregate_score,
            indicators=indicators,
            description=primary.description if primary else "",
            suggested_action=analysis.suggested_action.value,
            enrichment=enrichment,
            prior_incidents=prior_incidents,
        )

    @property
    def is_open(self) -> bool:
        return self.status is AlertStatus.OPEN

    def routing_keys(self) -> dict[AnalystAction, str]:
        """Button ``custom_id`` per action, in display order."""
        return {action: routing_key(action, self.id) for action in AnalystAction}

    def resolve(self, resolution: Resolution) -> None:
        self.status = AlertStatus.RESOLVED
        self.resolution = resolution

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "community_id": self.community_id,
            "channel_id": self.channel_id,
            "event_id": self.event_id,
            "subject_user_id": self.subject_user_id,
            "threat_type": self.threat_type,
            "score": round(self.score, 2),
            "indicators": self.indicators,
            "description": self.description,
            "suggested_action": self.suggested_action,
            "enrichment": self.enrichment.to_dict() if self.enrichment else None,
            "prior_incidents": self.prior_incidents,
            "status": self.status.value,
            "alert_message_id": self.alert_message_id,
            "created_at": self.created_at.isoformat(),
        }
