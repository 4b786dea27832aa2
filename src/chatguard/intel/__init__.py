"""Threat intelligence enrichment (MISP, OpenCTI)."""

from chatguard.intel.client import IntelAPIError, IntelUnavailableError
from chatguard.intel.misp import MISPClient
from chatguard.intel.models import (
    EnrichmentRecord,
    misp_attribute_type,
    misp_threat_level,
)
from chatguard.intel.opencti import OpenCTIClient
from chatguard.intel.service import ThreatIntelService

__all__ = [
    "EnrichmentRecord",
    "IntelAPIError",
    "IntelUnavailableError",
    "MISPClient",
    "OpenCTIClient",
    "ThreatIntelService",
    "misp_attribute_type",
    "misp_threat_level",
]
