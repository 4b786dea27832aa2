"""Threat detection: IOC extraction, reputation lookups and scoring.

Public API
----------
- :func:`extract_iocs`: URLs, IPs, domains, emails and hashes from text
- :func:`analyze_content`: keyword / casing / repetition / shortener heuristics
- :class:`ThreatScoringEngine`: combines every source into a :class:`ThreatAnalysis`
"""

from chatguard.detection.ai import AIThreatClassifier
from chatguard.detection.content import analyze_content
from chatguard.detection.engine import ThreatScoringEngine, attachment_sha256
from chatguard.detection.ioc import extract_iocs
from chatguard.detection.models import (
    IndicatorType,
    IOCSet,
    SignalSource,
    SuggestedAction,
    ThreatAnalysis,
    ThreatKind,
    ThreatSignal,
    aggregate_score,
    suggested_action_for,
)
from chatguard.detection.reputation import (
    LookupResult,
    LookupStatus,
    ReputationAPIError,
    ReputationUnavailableError,
    SafeBrowsingClient,
    VirusTotalClient,
)

__all__ = [
    "AIThreatClassifier",
    "IOCSet",
    "IndicatorType",
    "LookupResult",
    "LookupStatus",
    "ReputationAPIError",
    "ReputationUnavailableError",
    "SafeBrowsingClient",
    "SignalSource",
    "SuggestedAction",
    "ThreatAnalysis",
    "ThreatKind",
    "ThreatScoringEngine",
    "ThreatSignal",
    "VirusTotalClient",
    "aggregate_score",
    "analyze_content",
    "attachment_sha256",
    "extract_iocs",
    "suggested_action_for",
]
