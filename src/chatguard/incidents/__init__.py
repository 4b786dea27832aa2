"""Incident alerts and analyst actions."""

from chatguard.incidents.dispatcher import IncidentAlertDispatcher
from chatguard.incidents.models import (
    ActionOutcome,
    AlertStatus,
    AnalystAction,
    IncidentAlert,
    OutcomeStatus,
    Resolution,
    parse_routing_key,
    routing_key,
)

__all__ = [
    "ActionOutcome",
    "AlertStatus",
    "AnalystAction",
    "IncidentAlert",
    "IncidentAlertDispatcher",
    "OutcomeStatus",
    "Resolution",
    "parse_routing_key",
    "routing_key",
]
