"""Data models for threat intelligence enrichment."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chatguard.detection.ioc import hash_type
from chatguard.detection.models import IndicatorType, SignalSource

# MISP threat_level_id (1 = high ... 4 = undefined) to a 0-100 confidence
MISP_LEVEL_CONFIDENCE: dict[int, int] = {1: 90, 2: 60, 3: 30, 4: 10}

_MISP_ATTRIBUTE_TYPES: dict[IndicatorType, str] = {
    IndicatorType.URL: "url",
    IndicatorType.IP: "ip-dst",
    IndicatorType.DOMAIN: "domain",
    IndicatorType.EMAIL: "email-src",
}


def misp_attribute_type(indicator: str, indicator_type: IndicatorType) -> str | None:
    """Map an indicator to its MISP attribute type.

    Hashes map to ``md5``, ``sha1`` or ``sha256`` by length.  Message content
    has no MISP counterpart and yields ``None``.
    """
    if indicator_type is IndicatorType.HASH:
        return hash_type(indicator)
    return _MISP_ATTRIBUTE_TYPES.get(indicator_type)


def misp_threat_level(score: float) -> int:
    """Map a 0-100 threat score onto a MISP threat level (1 = high)."""
    if score >= 80:
        return 1
    if score >= 50:
        return 2
    if score >= 20:
        return 3
    return 4


@dataclass(frozen=True)
class EnrichmentRecord:
    """Context about an indicator from an intelligence platform."""

    source: SignalSource
    record_id: str
    classification: str
    indicator: str = ""
    tags: tuple[str, ...] = ()
    confidence: int = 0  # 0 - 100
    published: bool = True
    galaxies: tuple[str, ...] = ()
    created_by: str = "Unknown"
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", max(0, min(int(self.confidence), 100)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "record_id": self.record_id,
            "classification": self.classification,
            "indicator": self.indicator,
            "tags": list(self.tags),
            "confidence": self.confidence,
            "published": self.published,
            "galaxies": list(self.galaxies),
            "created_by": self.created_by,
            "metadata": self.metadata,
        }
