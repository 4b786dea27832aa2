"""Multi-source threat scoring.

1. IOC extraction (regex, ~0ms)
2. URL reputation and attachment hash lookups (concurrent, resilience-wrapped)
3. Content-pattern heuristics (~0ms)
4. Optional AI classifier

The aggregate score is the strongest signal.  A lookup that fails simply
contributes no signal; :meth:`ThreatScoringEngine.analyze` never raises.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from chatguard.detection.content import analyze_content
from chatguard.detection.forensics import log_threat_event
from chatguard.detection.ioc import extract_iocs
from chatguard.detection.models import SuggestedAction, ThreatAnalysis, ThreatSignal
from chatguard.detection.reputation import safe_browsing_signals, virustotal_signal
from chatguard.logging import get_logger
from chatguard.resilience import graceful

if TYPE_CHECKING:
    from chatguard.detection.ai import AIThreatClassifier
    from chatguard.detection.reputation import SafeBrowsingClient, VirusTotalClient
    from chatguard.platform.events import AttachmentRef

log = get_logger("chatguard.detection.engine")


def attachment_sha256(attachment: AttachmentRef) -> str | None:
    """Return the attachment's SHA-256, hashing its bytes if needed."""
    if attachment.sha256:
        return attachment.sha256.lower()
    if attachment.data is not None:
        return hashlib.sha256(attachment.data).hexdigest()
    return None


class ThreatScoringEngine:
    """Combine reputation lookups and content heuristics into one verdict."""

    def __init__(
        self,
        *,
        safe_browsing: SafeBrowsingClient | None = None,
        virustotal: VirusTotalClient | None = None,
        ai_classifier: AIThreatClassifier | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            safe_browsing: URL reputation client; URL lookups are skipped if
                ``None``.
            virustotal: File reputation client; attachment lookups are
                skipped if ``None``.
            ai_classifier: Optional AI classifier run after the rule-based
                checks.
        """
        self._safe_browsing = safe_browsing
        self._virustotal = virustotal
        self._ai_classifier = ai_classifier

    async def analyze(
        self,
        text: str,
        attachments: Iterable[AttachmentRef] = (),
        **context: Any,
    ) -> ThreatAnalysis:
        """Score a message.

        Args:
            text: Message text.
            attachments: Files attached to the message.
            **context: Event identifiers added to the forensic log record.

        Returns:
            The verdict.  An unexpected internal error yields an empty
            (score 0) verdict rather than an exception.
        """
        try:
            return await self._analyze(text or "", tuple(attachments), context)
        except Exception as e:
            log.error("threat_analysis_failed", error=str(e), error_type=type(e).__name__)
            return ThreatAnalysis.empty()

    async def _analyze(
        self,
        text: str,
        attachments: tuple[AttachmentRef, ...],
        context: dict[str, Any],
    ) -> ThreatAnalysis:
        start = time.perf_counter()
        iocs = extract_iocs(text)

        url_signals, attachment_signals = await asyncio.gather(
            graceful(lambda: self.check_urls(list(iocs.urls)), [], name="url_reputation"),
            graceful(lambda: self.scan_attachments(attachments), [], name="file_reputation"),
        )

        signals: list[ThreatSignal] = [*url_signals, *attachment_signals]

        content_signal = analyze_content(text)
        if content_signal is not None:
            signals.append(content_signal)

        if self._ai_classifier is not None and text:
            classifier = self._ai_classifier
            prior = list(signals)
            ai_signal = await graceful(
                lambda: classifier.classify(text, prior), None, name="ai_classifier"
            )
            if ai_signal is not None:
                signals.append(ai_signal)

        analysis = ThreatAnalysis.from_signals(signals, iocs)

        log.debug(
            "threat_analysis_complete",
            score=round(analysis.aggregate_score, 2),
            action=analysis.suggested_action.value,
            signal_count=len(signals),
            processing_ms=round((time.perf_counter() - start) * 1000, 2),
        )

        if analysis.suggested_action is not SuggestedAction.NONE:
            log_threat_event(content=text, analysis=analysis, **context)

        return analysis

    async def check_urls(self, urls: list[str]) -> list[ThreatSignal]:
        """Query URL reputation for *urls*; one signal per listed URL."""
        if self._safe_browsing is None or not urls:
            return []
        result = await self._safe_browsing.check_urls(urls)
        if not result.is_found or result.payload is None:
            return []
        return safe_browsing_signals(result.payload)

    async def scan_attachments(
        self, attachments: tuple[AttachmentRef, ...]
    ) -> list[ThreatSignal]:
        """Query file reputation for every hashable attachment concurrently."""
        if self._virustotal is None or not attachments:
            return []

        lookups = []
        for attachment in attachments:
            sha256 = attachment_sha256(attachment)
            if sha256 is None:
                log.debug("attachment_not_hashable", filename=attachment.filename)
                continue
            lookups.append(self._scan_one(attachment, sha256))

        results = await asyncio.gather(*lookups)
        return [signal for signal in results if signal is not None]

    async def _scan_one(self, attachment: AttachmentRef, sha256: str) -> ThreatSignal | None:
        assert self._virustotal is not None
        result = await self._virustotal.lookup_file(sha256)
        if not result.is_found or result.payload is None:
            return None
        return virustotal_signal(
            sha256, result.payload, filename=attachment.filename, size=attachment.size
        )

    async def close(self) -> None:
        """Close every owned HTTP client."""
        for client in (self._safe_browsing, self._virustotal, self._ai_classifier):
            if client is not None:
                await client.close()
