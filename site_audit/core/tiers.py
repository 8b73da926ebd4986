"""
Plan tiers and the limits they gate.

Tiers are ordered (FREE < SCAN < AUDIT < DEEP_DIVE). FREE is the restricted
tier: it only runs local analysis and scores on the technical subset.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class Tier(str, Enum):
    FREE = "FREE"
    SCAN = "SCAN"
    AUDIT = "AUDIT"
    DEEP_DIVE = "DEEP_DIVE"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank

    @property
    def is_restricted(self) -> bool:
        return self is Tier.FREE


_TIER_ORDER = [Tier.FREE, Tier.SCAN, Tier.AUDIT, Tier.DEEP_DIVE]


class TierConfig(BaseModel):
    tier: Tier
    max_pages: int
    max_competitors: int
    max_briefs: int
    max_seeds: int
    max_snippets: int

    class Config:
        frozen = True


TIER_LIMITS: dict[Tier, TierConfig] = {
    Tier.FREE: TierConfig(
        tier=Tier.FREE, max_pages=25, max_competitors=0, max_briefs=0, max_seeds=0, max_snippets=0,
    ),
    Tier.SCAN: TierConfig(
        tier=Tier.SCAN, max_pages=50, max_competitors=1, max_briefs=1, max_seeds=3, max_snippets=5,
    ),
    Tier.AUDIT: TierConfig(
        tier=Tier.AUDIT, max_pages=200, max_competitors=3, max_briefs=5, max_seeds=5, max_snippets=10,
    ),
    Tier.DEEP_DIVE: TierConfig(
        tier=Tier.DEEP_DIVE, max_pages=500, max_competitors=5, max_briefs=15, max_seeds=10, max_snippets=25,
    ),
}

# Sites without rankings cannot use seed expansion; some tiers get extra briefs instead
NEW_SITE_OVERRIDES: dict[Tier, dict[str, int]] = {
    Tier.FREE: {},
    Tier.SCAN: {"max_briefs": 2, "max_seeds": 0},
    Tier.AUDIT: {"max_briefs": 8, "max_seeds": 0},
    Tier.DEEP_DIVE: {"max_seeds": 0},
}


def get_tier_config(tier: Tier | str, is_new_site: bool = False) -> TierConfig:
    """Effective limits for a tier, adjusted for sites that have no rankings yet."""
    tier = Tier(tier)
    base = TIER_LIMITS[tier]
    if not is_new_site:
        return base
    return base.model_copy(update=NEW_SITE_OVERRIDES[tier])
