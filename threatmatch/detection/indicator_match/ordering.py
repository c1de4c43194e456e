"""Document ordering and the license gate for alert suppression."""

from enum import Enum

from threatmatch.detection.indicator_match.types import SortOrder


class LicenseTier(str, Enum):
    """License tiers, lowest first."""

    BASIC = "basic"
    STANDARD = "standard"
    GOLD = "gold"
    PLATINUM = "platinum"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return list(LicenseTier).index(self)

    def has_at_least(self, required: "LicenseTier | str") -> bool:
        return self.rank >= LicenseTier(required).rank


def is_suppression_active(suppression_configured: bool, suppression_licensed: bool) -> bool:
    return suppression_configured and suppression_licensed


def decide_sort_order(suppression_configured: bool, suppression_licensed: bool) -> SortOrder:
    """Ascending only for active suppression.

    Suppression windows need strictly increasing timestamps; without them
    descending order reaches the most recent events first.
    """
    if is_suppression_active(suppression_configured, suppression_licensed):
        return SortOrder.ASC
    return SortOrder.DESC
