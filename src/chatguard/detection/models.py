"""Data models for the threat scoring pipeline."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# Score thresholds (0-100) mapping an aggregate score to an action
BAN_THRESHOLD = 90
DELETE_THRESHOLD = 80
ALERT_THRESHOLD = 50
BLOCK_THRESHOLD = DELETE_THRESHOLD


class ThreatKind(StrEnum):
    """What a signal detected."""

    PHISHING_URL = "phishing_url"
    MALWARE_ATTACHMENT = "malware_attachment"
    SPAM = "spam"
    AI_CLASSIFICATION = "ai_classification"
    KNOWN_IOC = "known_ioc"


class IndicatorType(StrEnum):
    """Kind of indicator a signal points at."""

    URL = "url"
    IP = "ip"
    DOMAIN = "domain"
    EMAIL = "email"
    HASH = "hash"
    MESSAGE_CONTENT = "message_content"


class SignalSource(StrEnum):
    """Detection technique or external source that produced a signal."""

    GOOGLE_SAFE_BROWSING = "google_safe_browsing"
    VIRUSTOTAL = "virustotal"
    PATTERN_MATCHING = "pattern_matching"
    AI_CLASSIFIER = "ai_classifier"
    MISP = "misp"
    OPENCTI = "opencti"


class SuggestedAction(StrEnum):
    """Response suggested for an analysed message."""

    NONE = "none"
    ALERT_MODS = "alert_mods"
    DELETE_MESSAGE = "delete_message"
    BAN_USER = "ban_user"


def suggested_action_for(score: float) -> SuggestedAction:
    """Map an aggregate score to its suggested action."""
    if score >= BAN_THRESHOLD:
        return SuggestedAction.BAN_USER
    if score >= DELETE_THRESHOLD:
        return SuggestedAction.DELETE_MESSAGE
    if score >= ALERT_THRESHOLD:
        return SuggestedAction.ALERT_MODS
    return SuggestedAction.NONE


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


@dataclass(frozen=True)
class IOCSet:
    """Indicators of compromise extracted from one text.

    Each collection is deduplicated, keeps first-occurrence order and
    preserves case.
    """

    urls: tuple[str, ...] = ()
    ips: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    hashes: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("urls", "ips", "domains", "emails", "hashes"):
            object.__setattr__(self, name, _unique(getattr(self, name)))

    def __bool__(self) -> bool:
        return any((self.urls, self.ips, self.domains, self.emails, self.hashes))

    def __iter__(self) -> Iterator[tuple[str, IndicatorType]]:
        """Yield ``(value, type)`` pairs, URLs first."""
        for value in self.urls:
            yield value, IndicatorType.URL
        for value in self.hashes:
            yield value, IndicatorType.HASH
        for value in self.domains:
            yield value, IndicatorType.DOMAIN
        for value in self.ips:
            yield value, IndicatorType.IP
        for value in self.emails:
            yield value, IndicatorType.EMAIL

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "urls": list(self.urls),
            "ips": list(self.ips),
            "domains": list(self.domains),
            "emails": list(self.emails),
            "hashes": list(self.hashes),
        }


@dataclass(frozen=True)
class ThreatSignal:
    """One scored detection from a single technique or source."""

    kind: ThreatKind
    score: float  # 0 - 100
    indicator: str
    indicator_type: IndicatorType
    source: SignalSource
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0 <= self.score <= 100:
            raise ValueError(f"signal score must be between 0 and 100, got: {self.score}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "score": round(self.score, 2),
            "indicator": self.indicator,
            "indicator_type": self.indicator_type.value,
            "source": self.source.value,
            "description": self.description,
            "metadata": self.metadata,
        }


def aggregate_score(signals: Iterable[ThreatSignal]) -> float:
    """Aggregate signals into one score: the strongest signal wins.

    A single high-confidence detector is never diluted by weaker ones, and
    many weak signals never add up to a block.
    """
    return max((s.score for s in signals), default=0.0)


@dataclass(frozen=True)
class ThreatAnalysis:
    """Verdict for one analysed message."""

    aggregate_score: float
    signals: tuple[ThreatSignal, ...]
    iocs: IOCSet
    should_block: bool
    suggested_action: SuggestedAction

    @classmethod
    def from_signals(cls, signals: Iterable[ThreatSignal], iocs: IOCSet) -> ThreatAnalysis:
        """Build an analysis, deriving score, block flag and action from *signals*."""
        signals = tuple(signals)
        score = aggregate_score(signals)
        return cls(
            aggregate_score=score,
            signals=signals,
            iocs=iocs,
            should_block=score >= BLOCK_THRESHOLD,
            suggested_action=suggested_action_for(score),
        )

    @classmethod
    def empty(cls) -> ThreatAnalysis:
        return cls.from_signals((), IOCSet())

    def with_signals(self, *extra: ThreatSignal) -> ThreatAnalysis:
        """Return a new analysis that also includes *extra* signals."""
        return ThreatAnalysis.from_signals(self.signals + extra, self.iocs)

    @property
    def primary_signal(self) -> ThreatSignal | None:
        """The highest-scoring signal (first one on ties)."""
        if not self.signals:
            return None
        return max(self.signals, key=lambda s: s.score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "aggregate_score": round(self.aggregate_score, 2),
            "signals": [s.to_dict() for s in self.signals],
            "iocs": self.iocs.to_dict(),
            "should_block": self.should_block,
            "suggested_action": self.suggested_action.value,
        }
