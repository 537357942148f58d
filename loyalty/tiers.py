"""
Tier policy: maps lifetime earned points to a membership tier.

Thresholds are the minimum lifetime-earned value for each tier and are
inclusive, so a customer with exactly 500 earned points is SILVER under the
default table.
"""

from bisect import bisect_right
from typing import Mapping, Optional, Union

from .models import Tier


DEFAULT_TIER_THRESHOLDS: dict[Tier, int] = {
    Tier.BRONZE: 0,
    Tier.SILVER: 500,
    Tier.GOLD: 1500,
    Tier.PLATINUM: 5000,
}


class TierPolicy:
    def __init__(self, thresholds: Optional[Mapping[Union[Tier, str], int]] = None):
        table = thresholds if thresholds is not None else DEFAULT_TIER_THRESHOLDS
        if not table:
            raise ValueError("Tier thresholds must not be empty")

        resolved = sorted(((Tier(tier), int(minimum)) for tier, minimum in table.items()),
                          key=lambda item: list(Tier).index(item[0]))

        if resolved[0][1] != 0:
            raise ValueError(f"Lowest tier {resolved[0][0].value} must start at 0 points")
        for (lower, lower_min), (upper, upper_min) in zip(resolved, resolved[1:]):
            if upper_min <= lower_min:
                raise ValueError(
                    f"Tier thresholds must increase strictly: {upper.value} ({upper_min}) "
                    f"is not above {lower.value} ({lower_min})"
                )

        self._tiers = [tier for tier, _ in resolved]
        self._minimums = [minimum for _, minimum in resolved]

    @property
    def thresholds(self) -> dict[Tier, int]:
        return dict(zip(self._tiers, self._minimums))

    def tier_for(self, points_earned: int) -> Tier:
        index = bisect_right(self._minimums, points_earned) - 1
        return self._tiers[max(index, 0)]

    def next_tier(self, points_earned: int) -> Optional[tuple[Tier, int]]:
        """Return the next tier above the current one and the points still needed, or None at the top."""
        index = bisect_right(self._minimums, points_earned)
        if index >= len(self._tiers):
            return None
        return self._tiers[index], self._minimums[index] - points_earned

    def promote(self, current: Tier, points_earned: int) -> Tier:
        """Tier after earning, never lower than ``current`` even if the table has changed since."""
        candidate = self.tier_for(points_earned)
        order = list(Tier)
        return candidate if order.index(candidate) > order.index(current) else current
