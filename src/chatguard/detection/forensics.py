"""Forensic logging for detected threats.

All WARNING+ events automatically land in the rotating error log file
(``logs/chatguard_error.log``).
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any

from chatguard.detection.models import ThreatAnalysis
from chatguard.logging import get_logger

log = get_logger("chatguard.detection.forensics")


def log_threat_event(
    *,
    content: str,
    analysis: ThreatAnalysis,
    **context: Any,
) -> None:
    """Log a detailed forensic record for a scored message.

    Args:
        content: The analysed text.
        analysis: The verdict.
        **context: Identifiers of the event (community, channel, user, message).
    """
    content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()

    log.warning(
        "threat_event",
        timestamp=datetime.now(UTC).isoformat(),
        action=analysis.suggested_action.value,
        threat_score=round(analysis.aggregate_score, 2),
        should_block=analysis.should_block,
        signal_count=len(analysis.signals),
        signals=[
            {
                "kind": s.kind.value,
                "source": s.source.value,
                "score": round(s.score, 2),
                "indicator": s.indicator[:100],
            }
            for s in analysis.signals
        ],
        content_hash=content_hash,
        content_length=len(content),
        content_preview=content[:200],
        **context,
    )
