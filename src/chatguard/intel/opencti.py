"""OpenCTI GraphQL client (indicator lookups only)."""

from __future__ import annotations

from typing import Any

from chatguard.detection.models import SignalSource
from chatguard.intel.client import IntelAPIError, IntelClient
from chatguard.intel.models import EnrichmentRecord
from chatguard.logging import get_logger
from chatguard.resilience import DependencyGuard

log = get_logger("chatguard.intel.opencti")

_INDICATOR_QUERY = """
query GetIndicatorByValue($value: String!) {
  indicators(filters: { key: "value", values: [$value] }) {
    edges {
      node {
        id
        name
        pattern
        description
        confidence
        createdBy { name }
        objectLabel { value }
        objectMarking { definition }
      }
    }
  }
}
"""


class OpenCTIClient(IntelClient):
    """Look up indicators in OpenCTI's knowledge graph."""

    name = "opencti"

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 5.0,
        guard: DependencyGuard | None = None,
    ) -> None:
        super().__init__(
            base_url=url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            guard=guard,
        )

    async def find_indicator(self, value: str) -> EnrichmentRecord | None:
        """Return the first indicator whose value is *value*, if any.

        Raises:
            IntelAPIError: The GraphQL response carried errors.
        """
        body = await self.call(
            "POST", "/graphql", json={"query": _INDICATOR_QUERY, "variables": {"value": value}}
        )
        body = body or {}
        if body.get("errors"):
            raise IntelAPIError(
                str(body["errors"][0].get("message", "GraphQL error")),
                dependency=self.name,
                response=body,
            )

        edges = ((body.get("data") or {}).get("indicators") or {}).get("edges") or []
        if not edges:
            log.debug("opencti_no_match", value=value)
            return None

        node: dict[str, Any] = edges[0].get("node") or {}
        log.info("opencti_match_found", indicator_id=node.get("id"), name=node.get("name"))
        return EnrichmentRecord(
            source=SignalSource.OPENCTI,
            record_id=str(node.get("id", "")),
            classification=node.get("name") or node.get("description") or "",
            indicator=value,
            tags=tuple(
                label["value"] for label in node.get("objectLabel") or () if label.get("value")
            ),
            confidence=node.get("confidence") or 0,
            published=True,
            created_by=(node.get("createdBy") or {}).get("name", "Unknown"),
            metadata={
                "pattern": node.get("pattern"),
                "description": node.get("description"),
                "marking": [
                    m["definition"] for m in node.get("objectMarking") or () if m.get("definition")
                ],
            },
        )
