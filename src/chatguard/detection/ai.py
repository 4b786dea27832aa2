"""AI content classifier backed by a local Ollama model.

Optional final scoring step: the model is asked whether a message is a scam,
phishing lure or malware drop, given the signals the rule-based checks
already produced.  Calls go through a circuit breaker and a token bucket so
a slow or overloaded model degrades to "no signal" instead of stalling the
pipeline.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from chatguard.detection.models import IndicatorType, SignalSource, ThreatKind, ThreatSignal
from chatguard.logging import get_logger
from chatguard.resilience import DependencyGuard, RateLimiter

log = get_logger("chatguard.detection.ai")

_THREAT_ANALYSIS_PROMPT = """\
You are a security analyzer for a Discord community. Analyze the following \
message for threats to the members who will read it.

Check for:
1. Phishing: Lures to fake login, verification or "free gift" pages
2. Scams: Fake giveaways, impersonation of staff or brands, crypto schemes
3. Malware: Encouragement to download or run files or executables
4. Spam: Mass advertising or repeated unsolicited promotion

Context: Rule-based checks flagged these signals: {prior_signals}

Message to analyze:
---
{message}
---

Respond with ONLY a JSON object:
{{"is_threat": true, "threat_score": 0.5, "categories": ["phishing"], \
"reasoning": "Brief explanation", "false_positive_likely": false}}
"""

_MAX_PROMPT_CHARS = 2000


class AIThreatClassifier:
    """Ollama-based message classifier."""

    name = "ai_classifier"

    def __init__(
        self,
        url: str,
        model: str,
        *,
        timeout: float = 30.0,
        requests_per_minute: int = 20,
        guard: DependencyGuard | None = None,
    ) -> None:
        """Initialize the classifier.

        Args:
            url: Ollama base URL, e.g. ``http://localhost:11434``.
            model: Model name.
            timeout: Request timeout in seconds.
            requests_per_minute: Token bucket size for the default guard.
            guard: Resilience profile; a default breaker + limiter guard is
                built if omitted.
        """
        self._url = url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self.guard = guard or DependencyGuard(
            self.name,
            limiter=RateLimiter(requests_per_minute, 60.0, name=self.name),
            timeout=timeout,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _generate(self, prompt: str) -> Any:
        client = await self._get_client()
        response = await client.post(
            f"{self._url}/api/generate",
            json={
                "model": self._model,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "keep_alive": "10m",
                "options": {
                    "temperature": 0.1,
                    "num_predict": 200,
                },
            },
        )
        response.raise_for_status()
        result_text = response.json().get("response", "").strip()
        return json.loads(result_text)

    async def classify(
        self,
        content: str,
        prior_signals: list[ThreatSignal],
    ) -> ThreatSignal | None:
        """Ask the model whether *content* is a threat.

        Args:
            content: The message text.
            prior_signals: Signals from the rule-based checks, for context.

        Returns:
            An ``ai_classification`` signal if the model flags the message,
            ``None`` if clean.  Returns ``None`` on any error (fail-open).
        """
        signals_text = "; ".join(
            f"{s.kind.value}: {s.description} (score={s.score:.0f})" for s in prior_signals
        )
        prompt = _THREAT_ANALYSIS_PROMPT.format(
            prior_signals=signals_text or "None",
            message=content[:_MAX_PROMPT_CHARS],
        )

        try:
            result = await self.guard.call(lambda: self._generate(prompt))
        except Exception as e:
            log.warning("ai_classification_failed", error=str(e), error_type=type(e).__name__)
            return None  # Fail open

        if not isinstance(result, dict):
            log.warning("ai_classification_invalid_response", response_type=type(result).__name__)
            return None  # Fail open

        if not result.get("is_threat"):
            return None

        score = _normalize_score(result.get("threat_score", 0.7))
        if score <= 0:
            return None

        reasoning = str(result.get("reasoning", ""))
        return ThreatSignal(
            kind=ThreatKind.AI_CLASSIFICATION,
            score=score,
            indicator=content[:100],
            indicator_type=IndicatorType.MESSAGE_CONTENT,
            source=SignalSource.AI_CLASSIFIER,
            description=reasoning[:200] or "AI classifier flagged message",
            metadata={
                "ai_reasoning": reasoning,
                "categories": result.get("categories", []),
                "false_positive_likely": bool(result.get("false_positive_likely", False)),
            },
        )

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _normalize_score(raw: Any) -> float:
    """Map the model's 0.0-1.0 (or 0-100) score onto 0-100."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if value <= 1.0:
        value *= 100
    return max(0.0, min(value, 100.0))
