"""Prometheus metrics.

All collectors live in one module-level :data:`REGISTRY` rather than the
process-global default, so importing ChatGuard never clashes with other
instrumented libraries.  :func:`start_metrics_server` exposes the registry
over HTTP for scraping.
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from chatguard.logging import get_logger

log = get_logger("chatguard.metrics")

REGISTRY = CollectorRegistry()

SCORE_BUCKETS = (10, 20, 30, 40, 50, 60, 70, 80, 90, 100)
DURATION_BUCKETS = (0.1, 0.5, 1, 2, 5, 10)

# Circuit state as a number for dashboards
CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}

MESSAGES_PROCESSED = Counter(
    "chatguard_messages_processed",
    "Community messages scored",
    registry=REGISTRY,
)
THREAT_DETECTIONS = Counter(
    "chatguard_security_threat_detections",
    "Messages with a non-zero threat score",
    ["type", "severity"],
    registry=REGISTRY,
)
THREAT_SCORE = Histogram(
    "chatguard_security_threat_score",
    "Distribution of threat scores",
    ["type"],
    buckets=SCORE_BUCKETS,
    registry=REGISTRY,
)
ALERTS = Counter(
    "chatguard_security_alerts",
    "Incident alerts raised",
    ["severity"],
    registry=REGISTRY,
)
ANALYST_ACTIONS = Counter(
    "chatguard_security_analyst_actions",
    "Analyst actions applied to alerts",
    ["action", "status"],
    registry=REGISTRY,
)
RAIDS = Counter(
    "chatguard_security_raids",
    "Raid mitigations started",
    registry=REGISTRY,
)
API_CALLS = Counter(
    "chatguard_api_calls",
    "External API calls",
    ["api", "status"],
    registry=REGISTRY,
)
API_ERRORS = Counter(
    "chatguard_api_errors",
    "External API errors",
    ["api", "error_type"],
    registry=REGISTRY,
)
API_DURATION = Histogram(
    "chatguard_api_duration_seconds",
    "External API call duration in seconds",
    ["api"],
    buckets=DURATION_BUCKETS,
    registry=REGISTRY,
)
CIRCUIT_STATE = Gauge(
    "chatguard_circuit_breaker_state",
    "Circuit state (0 closed, 1 half-open, 2 open)",
    ["breaker"],
    registry=REGISTRY,
)
CIRCUIT_TRANSITIONS = Counter(
    "chatguard_circuit_breaker_transitions",
    "Circuit state changes",
    ["breaker", "to_state"],
    registry=REGISTRY,
)


def severity_label(score: float) -> str:
    """Map a 0-100 score onto low / medium / high / critical."""
    if score >= 90:
        return "critical"
    if score >= 80:
        return "high"
    if score >= 50:
        return "medium"
    return "low"


def record_message() -> None:
    MESSAGES_PROCESSED.inc()


def record_threat_detection(threat_type: str, score: float) -> None:
    THREAT_DETECTIONS.labels(type=threat_type, severity=severity_label(score)).inc()
    THREAT_SCORE.labels(type=threat_type).observe(score)


def record_alert(score: float) -> None:
    ALERTS.labels(severity=severity_label(score)).inc()


def record_analyst_action(action: str, status: str) -> None:
    ANALYST_ACTIONS.labels(action=action, status=status).inc()


def record_raid() -> None:
    RAIDS.inc()


def record_api_call(api: str, status: str, duration: float) -> None:
    API_CALLS.labels(api=api, status=status).inc()
    API_DURATION.labels(api=api).observe(duration)


def record_api_error(api: str, error_type: str) -> None:
    API_ERRORS.labels(api=api, error_type=error_type).inc()


def circuit_breaker_state_changed(name: str, old_state: object, new_state: object) -> None:
    """Breaker ``on_state_change`` hook; accepts enum members or plain strings."""
    to_state = str(getattr(new_state, "value", new_state))
    CIRCUIT_STATE.labels(breaker=name).set(CIRCUIT_STATE_VALUES.get(to_state, -1))
    CIRCUIT_TRANSITIONS.labels(breaker=name, to_state=to_state).inc()


def get_metrics_output() -> bytes:
    """Current metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def start_metrics_server(port: int, addr: str = "0.0.0.0") -> None:  # nosec B104
    """Serve :data:`REGISTRY` on ``http://<addr>:<port>/metrics``."""
    start_http_server(port, addr=addr, registry=REGISTRY)
    log.info("metrics_server_started", addr=addr, port=port)
