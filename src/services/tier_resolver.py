"""Subscription tier lookup"""

from typing import Dict, Optional, Protocol

from src.models.rate_limit import Tier

TIER_ALIASES = {
    "plus": Tier.PREMIUM,
    "pro": Tier.PREMIUM,
}


class TierResolver(Protocol):
    """Billing-backed lookup of a user's subscription tier name"""

    async def get_tier(self, user_id: str) -> Optional[str]: ...


class StaticTierResolver:
    """Tier lookup backed by a user_id -> subscription_tier mapping"""

    def __init__(self, profiles: Optional[Dict[str, str]] = None):
        self.profiles = dict(profiles or {})

    async def get_tier(self, user_id: str) -> Optional[str]:
        return self.profiles.get(user_id)


def normalize_tier(tier) -> Tier:
    """Map a tier name or alias onto a known Tier; unknown names fall back to free"""
    if isinstance(tier, Tier):
        return tier
    if not tier:
        return Tier.FREE

    name = str(tier).strip().lower()
    if name in TIER_ALIASES:
        return TIER_ALIASES[name]
    try:
        return Tier(name)
    except ValueError:
        return Tier.FREE
