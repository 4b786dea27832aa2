"""Mass-join (raid) detection."""

from chatguard.raid.detector import MitigationSummary, RaidDetector, RaidStats

__all__ = ["MitigationSummary", "RaidDetector", "RaidStats"]
