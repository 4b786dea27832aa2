"""URL and file reputation clients (Google Safe Browsing v4, VirusTotal v3).

Each client sends its requests through a :class:`DependencyGuard` and
reports every lookup as a :class:`LookupResult`, so callers can tell a
match, a clean miss and a failed call apart without handling exceptions.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from chatguard import __version__
from chatguard.detection.models import IndicatorType, SignalSource, ThreatKind, ThreatSignal
from chatguard.logging import get_logger
from chatguard.resilience import (
    CircuitBreaker,
    DependencyError,
    DependencyGuard,
    OperationTimeoutError,
    RetryPolicy,
    SharedRateLimiter,
)

log = get_logger("chatguard.detection.reputation")

SAFE_BROWSING_API_BASE = "https://safebrowsing.googleapis.com/v4"
VIRUSTOTAL_API_BASE = "https://www.virustotal.com/api/v3"

SAFE_BROWSING_THREAT_SCORES: dict[str, int] = {
    "MALWARE": 95,
    "SOCIAL_ENGINEERING": 90,
    "UNWANTED_SOFTWARE": 70,
    "POTENTIALLY_HARMFUL_APPLICATION": 60,
}
UNKNOWN_THREAT_SCORE = 50


class ReputationAPIError(DependencyError):
    """A reputation service rejected or failed a request."""

    def __init__(
        self,
        message: str,
        dependency: str = "reputation",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, dependency=dependency)
        self.status_code = status_code


class ReputationUnavailableError(ReputationAPIError):
    """Transient failure (network error, 429 or 5xx); safe to retry."""


# Failures that say something about the service rather than the request
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ReputationUnavailableError,
    OperationTimeoutError,
)


def reputation_retry_policy(
    max_attempts: int = 3, initial_delay: float = 0.5, max_delay: float = 5.0
) -> RetryPolicy:
    """Retry transient reputation failures only."""
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        retry_on=TRANSIENT_ERRORS,
    )


# ---------------------------------------------------------------------------
# Lookup outcome
# ---------------------------------------------------------------------------


class LookupStatus(StrEnum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class LookupResult:
    """Outcome of one reputation call."""

    status: LookupStatus
    payload: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def found(cls, payload: dict[str, Any]) -> LookupResult:
        return cls(LookupStatus.FOUND, payload=payload)

    @classmethod
    def not_found(cls) -> LookupResult:
        return cls(LookupStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> LookupResult:
        return cls(LookupStatus.FAILED, error=error)

    @property
    def is_found(self) -> bool:
        return self.status is LookupStatus.FOUND

    @property
    def is_failed(self) -> bool:
        return self.status is LookupStatus.FAILED


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class _ReputationClient:
    """Shared httpx plumbing for reputation services."""

    name = "reputation"

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float,
        headers: dict[str, str] | None = None,
        guard: DependencyGuard | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = headers or {}
        self._client: httpx.AsyncClient | None = None
        self.guard = guard or DependencyGuard(
            self.name,
            breaker=CircuitBreaker(self.name, failure_on=TRANSIENT_ERRORS),
            retry_policy=reputation_retry_policy(),
            timeout=timeout,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Make one request.

        Returns:
            Parsed JSON body, or ``None`` for a 404.

        Raises:
            ReputationUnavailableError: Network error, 429 or 5xx.
            ReputationAPIError: Any other error status.
        """
        client = await self._get_client()

        try:
            response = await client.request(method, path, params=params, json=json)
        except httpx.RequestError as e:
            raise ReputationUnavailableError(
                f"Request failed: {e}", dependency=self.name
            ) from e

        if response.status_code == 404:
            return None

        if response.status_code == 429 or response.status_code >= 500:
            raise ReputationUnavailableError(
                f"HTTP {response.status_code}",
                dependency=self.name,
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            raise ReputationAPIError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                dependency=self.name,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ReputationAPIError(
                "Invalid JSON response", dependency=self.name, status_code=response.status_code
            ) from e

    async def _lookup(
        self, op: Callable[[], Awaitable[dict[str, Any] | None]], **context: Any
    ) -> LookupResult:
        try:
            payload = await self.guard.call(op)
        except Exception as e:
            log.warning(
                "reputation_lookup_failed",
                service=self.name,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            return LookupResult.failed(str(e))

        if not payload:
            return LookupResult.not_found()
        return LookupResult.found(payload)


class SafeBrowsingClient(_ReputationClient):
    """Google Safe Browsing v4 ``threatMatches:find`` client."""

    name = "google_safe_browsing"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = SAFE_BROWSING_API_BASE,
        timeout: float = 5.0,
        guard: DependencyGuard | None = None,
    ) -> None:
        super().__init__(base_url=base_url, timeout=timeout, guard=guard)
        self._api_key = api_key

    async def check_urls(self, urls: list[str]) -> LookupResult:
        """Look up *urls* in one request.

        Returns:
            ``found`` with the ``{"matches": [...]}`` payload, ``not_found``
            when no URL is listed, ``failed`` on error.
        """
        if not urls:
            return LookupResult.not_found()

        body = {
            "client": {"clientId": "chatguard", "clientVersion": __version__},
            "threatInfo": {
                "threatTypes": list(SAFE_BROWSING_THREAT_SCORES),
                "platformTypes": ["ANY_PLATFORM"],
                "threatEntryTypes": ["URL"],
                "threatEntries": [{"url": url} for url in urls],
            },
        }

        async def op() -> dict[str, Any] | None:
            payload = await self._request(
                "POST", "/threatMatches:find", params={"key": self._api_key}, json=body
            )
            # An empty object means no URL matched
            if not payload or not payload.get("matches"):
                return None
            return payload

        result = await self._lookup(op, url_count=len(urls))
        log.debug("url_reputation_checked", url_count=len(urls), status=result.status.value)
        return result


def safe_browsing_signals(payload: dict[str, Any]) -> list[ThreatSignal]:
    """Turn a Safe Browsing match payload into one signal per listed URL.

    When a URL matches several threat types, the highest-scoring one wins.
    """
    best: dict[str, tuple[int, dict[str, Any]]] = {}
    for match in payload.get("matches", []):
        url = match.get("threat", {}).get("url")
        if not url:
            continue
        score = SAFE_BROWSING_THREAT_SCORES.get(match.get("threatType", ""), UNKNOWN_THREAT_SCORE)
        if url not in best or score > best[url][0]:
            best[url] = (score, match)

    signals = []
    for url, (score, match) in best.items():
        threat_type = match.get("threatType", "UNKNOWN")
        log.warning("malicious_url_detected", url=url, threat_type=threat_type)
        signals.append(
            ThreatSignal(
                kind=ThreatKind.PHISHING_URL,
                score=float(score),
                indicator=url,
                indicator_type=IndicatorType.URL,
                source=SignalSource.GOOGLE_SAFE_BROWSING,
                description=f"Malicious URL detected: {threat_type}",
                metadata={
                    "threat_type": threat_type,
                    "platform_type": match.get("platformType"),
                    "threat_entry_type": match.get("threatEntryType"),
                },
            )
        )
    return signals


class VirusTotalClient(_ReputationClient):
    """VirusTotal v3 file report client (hash lookups only, no uploads)."""

    name = "virustotal"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = VIRUSTOTAL_API_BASE,
        timeout: float = 10.0,
        guard: DependencyGuard | None = None,
        shared_budget: SharedRateLimiter | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: VirusTotal API key.
            base_url: API base URL.
            timeout: Request timeout in seconds.
            guard: Resilience profile; a default one is built if omitted.
            shared_budget: Optional cross-process request budget checked
                before each lookup (the public API allows 4 requests/min).
        """
        super().__init__(
            base_url=base_url,
            timeout=timeout,
            headers={"x-apikey": api_key},
            guard=guard,
        )
        self._shared_budget = shared_budget

    async def lookup_file(self, sha256: str) -> LookupResult:
        """Fetch the file report for *sha256*.

        Returns:
            ``found`` with the report, ``not_found`` for unknown files,
            ``failed`` on error or when the shared budget is exhausted.
        """
        if self._shared_budget is not None:
            budget = await self._shared_budget.check()
            if not budget.allowed:
                log.info("virustotal_budget_exhausted", reset_in=budget.reset_in)
                return LookupResult.failed("virustotal request budget exhausted")

        async def op() -> dict[str, Any] | None:
            return await self._request("GET", f"/files/{sha256}")

        return await self._lookup(op, sha256=sha256)


def virustotal_signal(
    sha256: str,
    payload: dict[str, Any],
    *,
    filename: str | None = None,
    size: int | None = None,
) -> ThreatSignal | None:
    """Score a VirusTotal file report by engine detection rate.

    Returns:
        A ``malware_attachment`` signal, or ``None`` when no engine flagged
        the file.
    """
    stats = payload.get("data", {}).get("attributes", {}).get("last_analysis_stats") or {}
    malicious = int(stats.get("malicious", 0) or 0)
    suspicious = int(stats.get("suspicious", 0) or 0)
    total = sum(int(v or 0) for v in stats.values() if isinstance(v, int | float))

    if malicious + suspicious <= 0 or total <= 0:
        return None

    rate = min((malicious + suspicious) / total * 100, 100.0)
    log.warning(
        "malware_detected",
        sha256=sha256,
        filename=filename,
        malicious=malicious,
        total_engines=total,
    )
    return ThreatSignal(
        kind=ThreatKind.MALWARE_ATTACHMENT,
        score=rate,
        indicator=sha256,
        indicator_type=IndicatorType.HASH,
        source=SignalSource.VIRUSTOTAL,
        description=f"Malicious file detected: {filename or sha256}",
        metadata={
            "file_name": filename,
            "file_size": size,
            "malicious_count": malicious,
            "suspicious_count": suspicious,
            "total_engines": total,
            "detection_rate": round(rate, 2),
        },
    )
