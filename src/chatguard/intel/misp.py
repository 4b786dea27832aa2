"""MISP (Malware Information Sharing Platform) REST client."""

from __future__ import annotations

from typing import Any

from chatguard import __version__
from chatguard.detection.models import SignalSource
from chatguard.intel.client import IntelClient
from chatguard.intel.models import MISP_LEVEL_CONFIDENCE, EnrichmentRecord
from chatguard.logging import get_logger
from chatguard.resilience import DependencyGuard

log = get_logger("chatguard.intel.misp")

SIGHTING_SOURCE = "ChatGuard Discord Bot"


def _names(items: list[dict[str, Any]] | None) -> tuple[str, ...]:
    return tuple(i["name"] for i in items or () if i.get("name"))


def _event_record(event: dict[str, Any], indicator: str) -> EnrichmentRecord:
    try:
        level = int(event.get("threat_level_id", 4))
    except (TypeError, ValueError):
        level = 4
    return EnrichmentRecord(
        source=SignalSource.MISP,
        record_id=str(event.get("id", "")),
        classification=event.get("info", ""),
        indicator=indicator,
        tags=_names(event.get("Tag")),
        confidence=MISP_LEVEL_CONFIDENCE.get(level, 10),
        published=bool(event.get("published", False)),
        galaxies=_names(event.get("Galaxy")),
        created_by=(event.get("Orgc") or {}).get("name", "Unknown"),
        metadata={
            "threat_level_id": level,
            "analysis": event.get("analysis"),
            "date": event.get("date"),
            "attribute_count": len(event.get("Attribute") or ()),
        },
    )


class MISPClient(IntelClient):
    """Query, sight and create MISP events.

    Methods raise on failure; :class:`~chatguard.intel.service.ThreatIntelService`
    turns failures into ``None`` / ``False``.
    """

    name = "misp"

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
                "Authorization": api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            guard=guard,
        )

    async def search(self, value: str, attribute_type: str) -> EnrichmentRecord | None:
        """Find the published event holding attribute *value*.

        Returns:
            The event as an :class:`EnrichmentRecord`, or ``None`` on a miss.
        """
        found = await self.call(
            "POST",
            "/attributes/restSearch",
            json={
                "returnFormat": "json",
                "value": value,
                "type": attribute_type,
                "limit": 1,
                "published": True,
            },
        )
        attributes = ((found or {}).get("response") or {}).get("Attribute") or []
        if not attributes:
            log.debug("misp_no_match", value=value, attribute_type=attribute_type)
            return None

        event_id = attributes[0].get("event_id")
        detail = await self.call("GET", f"/events/view/{event_id}")
        event = (detail or {}).get("Event")
        if not event:
            return None

        log.info("misp_match_found", event_id=event_id, info=event.get("info"))
        return _event_record(event, value)

    async def add_sighting(self, value: str, context_id: str) -> None:
        """Report that *value* was seen in community *context_id*."""
        await self.call(
            "POST",
            "/sightings/add",
            json={
                "value": value,
                "source": SIGHTING_SOURCE,
                "type": "0",  # sighting, not false positive
                "metadata": {
                    "discord_guild_id": context_id,
                    "platform": "discord",
                    "bot_version": __version__,
                },
            },
        )
        log.info("misp_sighting_reported", value=value, context_id=context_id)

    async def add_event(
        self,
        *,
        info: str,
        threat_level: int,
        threat_type: str,
        attribute_type: str,
        value: str,
        context_id: str,
    ) -> EnrichmentRecord | None:
        """Create an unpublished event holding one attribute.

        Events are always drafts: a human reviews them before publishing.
        """
        created = await self.call(
            "POST",
            "/events/add",
            json={
                "Event": {
                    "info": info,
                    "threat_level_id": str(threat_level),
                    "analysis": "0",  # initial
                    "distribution": "3",  # all communities
                    "published": False,
                    "Tag": [
                        {"name": "tlp:white"},
                        {"name": "source:discord"},
                        {"name": "type:OSINT"},
                        {"name": f"threat-type:{threat_type}"},
                    ],
                    "Attribute": [
                        {
                            "type": attribute_type,
                            "value": value,
                            "category": "Network activity",
                            "comment": f"Observed on Discord guild {context_id}",
                            "to_ids": True,
                        }
                    ],
                    "Galaxy": [],
                }
            },
        )
        event = (created or {}).get("Event")
        if not event:
            return None

        log.info("misp_event_created", event_id=event.get("id"), info=event.get("info"))
        record = _event_record(event, value)
        if record.published:
            # The platform is expected to honour the draft flag
            log.warning("misp_event_unexpectedly_published", event_id=record.record_id)
        return record
