"""Threat intelligence enrichment over MISP and OpenCTI.

Every operation is fail-open: a miss and a failure look the same to the
caller, and nothing here raises.
"""

from __future__ import annotations

from chatguard.detection.models import IndicatorType, ThreatSignal
from chatguard.intel.misp import MISPClient
from chatguard.intel.models import EnrichmentRecord, misp_attribute_type, misp_threat_level
from chatguard.intel.opencti import OpenCTIClient
from chatguard.logging import get_logger

log = get_logger("chatguard.intel.service")


class ThreatIntelService:
    """Enrich, sight and report indicators."""

    def __init__(
        self,
        *,
        misp: MISPClient | None = None,
        opencti: OpenCTIClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            misp: MISP client, or ``None`` when MISP is disabled.
            opencti: OpenCTI client, or ``None`` when OpenCTI is disabled.
        """
        self._misp = misp
        self._opencti = opencti

    @property
    def enabled(self) -> bool:
        return self._misp is not None or self._opencti is not None

    async def lookup(
        self, indicator: str, indicator_type: IndicatorType
    ) -> EnrichmentRecord | None:
        """Look *indicator* up in MISP, then in OpenCTI on a miss.

        Returns:
            The first matching record, or ``None`` on miss or failure.
        """
        if self._misp is not None:
            attribute_type = misp_attribute_type(indicator, indicator_type)
            if attribute_type is not None:
                try:
                    record = await self._misp.search(indicator, attribute_type)
                except Exception as e:
                    log.warning("misp_lookup_failed", indicator=indicator, error=str(e))
                    record = None
                if record is not None:
                    return record

        if self._opencti is not None:
            try:
                return await self._opencti.find_indicator(indicator)
            except Exception as e:
                log.warning("opencti_lookup_failed", indicator=indicator, error=str(e))

        return None

    async def report_sighting(self, indicator: str, context_id: str) -> bool:
        """Tell MISP that *indicator* was seen in community *context_id*.

        Returns:
            ``True`` if the sighting was recorded.
        """
        if self._misp is None:
            log.debug("misp_not_configured", operation="report_sighting")
            return False
        try:
            await self._misp.add_sighting(indicator, context_id)
        except Exception as e:
            log.error("misp_sighting_failed", indicator=indicator, error=str(e))
            return False
        return True

    async def create_record(
        self, signal: ThreatSignal, context_id: str
    ) -> EnrichmentRecord | None:
        """Share a novel high-confidence threat as a draft MISP event.

        The event is never published automatically.

        Returns:
            The created record, or ``None`` if MISP is disabled, the indicator
            has no MISP type or the call failed.
        """
        if self._misp is None:
            log.debug("misp_not_configured", operation="create_record")
            return None

        attribute_type = misp_attribute_type(signal.indicator, signal.indicator_type)
        if attribute_type is None:
            log.debug(
                "intel_record_unsupported_indicator",
                indicator_type=signal.indicator_type.value,
            )
            return None

        log.info(
            "intel_record_creating",
            threat_type=signal.kind.value,
            score=signal.score,
            context_id=context_id,
        )
        try:
            return await self._misp.add_event(
                info=f"Discord Threat: {signal.kind.value} - {signal.description}",
                threat_level=misp_threat_level(signal.score),
                threat_type=signal.kind.value,
                attribute_type=attribute_type,
                value=signal.indicator,
                context_id=context_id,
            )
        except Exception as e:
            log.error("misp_event_creation_failed", indicator=signal.indicator, error=str(e))
            return None

    async def close(self) -> None:
        for client in (self._misp, self._opencti):
            if client is not None:
                await client.close()
