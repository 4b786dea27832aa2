"""Shared httpx plumbing for intelligence platform clients."""

from __future__ import annotations

from typing import Any

import httpx

from chatguard.resilience import (
    CircuitBreaker,
    DependencyError,
    DependencyGuard,
    OperationTimeoutError,
    RetryPolicy,
)


class IntelAPIError(DependencyError):
    """An intelligence platform rejected or failed a request."""

    def __init__(
        self,
        message: str,
        dependency: str = "intel",
        status_code: int | None = None,
        response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, dependency=dependency)
        self.status_code = status_code
        self.response = response or {}


class IntelUnavailableError(IntelAPIError):
    """Transient failure (network error, 429 or 5xx); safe to retry."""


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (IntelUnavailableError, OperationTimeoutError)


def intel_retry_policy(
    max_attempts: int = 2, initial_delay: float = 0.5, max_delay: float = 5.0
) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        retry_on=TRANSIENT_ERRORS,
    )


class IntelClient:
    """Base class: lazily created :class:`httpx.AsyncClient` plus a guard."""

    name = "intel"

    def __init__(
        self,
        *,
        base_url: str,
        headers: dict[str, str],
        timeout: float = 5.0,
        guard: DependencyGuard | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = headers
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self.guard = guard or DependencyGuard(
            self.name,
            breaker=CircuitBreaker(self.name, failure_on=TRANSIENT_ERRORS),
            retry_policy=intel_retry_policy(),
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
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Make one request.

        Returns:
            Parsed JSON body, or ``None`` for a 404.

        Raises:
            IntelUnavailableError: Network error, 429 or 5xx.
            IntelAPIError: Any other error status or an invalid body.
        """
        client = await self._get_client()

        try:
            response = await client.request(method, path, json=json)
        except httpx.RequestError as e:
            raise IntelUnavailableError(f"Request failed: {e}", dependency=self.name) from e

        if response.status_code == 404:
            return None

        if response.status_code == 429 or response.status_code >= 500:
            raise IntelUnavailableError(
                f"HTTP {response.status_code}",
                dependency=self.name,
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"message": response.text}
            raise IntelAPIError(
                str(error_data.get("message", f"HTTP {response.status_code}")),
                dependency=self.name,
                status_code=response.status_code,
                response=error_data,
            )

        try:
            return response.json()
        except ValueError as e:
            raise IntelAPIError(
                "Invalid JSON response", dependency=self.name, status_code=response.status_code
            ) from e

    async def call(self, method: str, path: str, json: dict[str, Any] | None = None) -> Any:
        """Run :meth:`_request` through this client's guard."""
        return await self.guard.call(lambda: self._request(method, path, json=json))
