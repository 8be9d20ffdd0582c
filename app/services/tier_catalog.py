"""
Subscription Tier Catalog
=========================

Static, immutable pricing table. Not persisted: the tier, cycle and discount
chosen at invoice time are pinned in the ``payment.created`` audit entry, so
edits here never change what an already-issued invoice is worth.

PRICING:
    amount = round(base_price × cycle_multiplier × (1 − discount/100))
    cycle_multiplier: monthly 1, lifetime 1, annual 10 (12 months for the price of 10)
    discount: Web-of-Trust discount, hard-capped at 50%
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from app.core.errors import InvalidBillingCycleError, InvalidTierError

ANNUAL_MULTIPLIER = 10
ANNUAL_MONTHS_FREE = 2
MAX_DISCOUNT_PERCENT = 50

BILLING_CYCLES = ("monthly", "annual", "lifetime")


@dataclass(frozen=True)
class TierInfo:
    tier: str
    name: str
    description: str
    price_usd: int  # cents
    price_sats: int
    features: Tuple[str, ...]
    identity_limit: int
    custom_domain: bool
    analytics: bool
    api_access: bool
    is_lifetime: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier,
            "name": self.name,
            "description": self.description,
            "priceUsd": self.price_usd,
            "priceSats": self.price_sats,
            "features": list(self.features),
            "nip05Limit": self.identity_limit,
            "customDomain": self.custom_domain,
            "analytics": self.analytics,
            "apiAccess": self.api_access,
            "isLifetime": self.is_lifetime,
        }


TIERS: Mapping[str, TierInfo] = MappingProxyType({
    "FREE": TierInfo(
        tier="FREE",
        name="Free",
        description="Get started with basic NIP-05 verification",
        price_usd=0,
        price_sats=0,
        features=(
            "Basic NIP-05 identity (user@nostrmaxi.com)",
            "Lightning address forwarding",
            "WoT score viewing",
        ),
        identity_limit=1,
        custom_domain=False,
        analytics=False,
        api_access=False,
    ),
    "PRO": TierInfo(
        tier="PRO",
        name="Pro",
        description="For creators who want their own domain",
        price_usd=900,
        price_sats=21000,
        features=(
            "Custom domain NIP-05 (you@yourdomain.com)",
            "Lightning address forwarding",
            "Basic analytics dashboard",
            "Priority support",
            "WoT-based discounts",
        ),
        identity_limit=1,
        custom_domain=True,
        analytics=True,
        api_access=False,
    ),
    "BUSINESS": TierInfo(
        tier="BUSINESS",
        name="Business",
        description="For teams and power users",
        price_usd=2900,
        price_sats=69000,
        features=(
            "Up to 10 NIP-05 identities",
            "Multiple custom domains",
            "Full analytics dashboard",
            "API access with 10,000 requests/day",
            "Priority relay access",
            "Dedicated support",
        ),
        identity_limit=10,
        custom_domain=True,
        analytics=True,
        api_access=True,
    ),
    "LIFETIME": TierInfo(
        tier="LIFETIME",
        name="Lifetime Pro",
        description="One-time payment, forever access",
        price_usd=9900,
        price_sats=210000,
        features=(
            "All Pro features forever",
            "Custom domain NIP-05",
            "Analytics dashboard",
            "No recurring payments",
            "Locked-in pricing",
        ),
        identity_limit=1,
        custom_domain=True,
        analytics=True,
        api_access=False,
        is_lifetime=True,
    ),
})


def get_tiers() -> List[TierInfo]:
    return list(TIERS.values())


def get_tier(tier: str) -> TierInfo:
    info = TIERS.get(str(tier).upper()) if tier else None
    if info is None:
        raise InvalidTierError(detail=f"unknown tier {tier!r}")
    return info


def resolve_purchase(tier: str, billing_cycle: str) -> Tuple[TierInfo, str]:
    """
    Validate a purchase request and return the (tier, cycle) actually sold.

    FREE cannot be invoiced. A lifetime cycle always buys LIFETIME, and the
    LIFETIME tier is always sold on the lifetime cycle.
    """
    cycle = (billing_cycle or "monthly").lower()
    if cycle not in BILLING_CYCLES:
        raise InvalidBillingCycleError(detail=f"unknown billing cycle {billing_cycle!r}")

    info = get_tier(tier)
    if info.tier == "FREE":
        raise InvalidTierError(detail="FREE tier cannot be invoiced")

    if cycle == "lifetime":
        info = TIERS["LIFETIME"]
    if info.is_lifetime:
        cycle = "lifetime"
    return info, cycle


def cycle_multiplier(billing_cycle: str) -> int:
    return ANNUAL_MULTIPLIER if billing_cycle == "annual" else 1


def capped_discount(discount_percent) -> int:
    """Clamp a trust discount into [0, MAX_DISCOUNT_PERCENT]."""
    if not discount_percent or discount_percent < 0:
        return 0
    return int(min(discount_percent, MAX_DISCOUNT_PERCENT))


def price(base: int, billing_cycle: str, discount_percent: int) -> int:
    return round(base * cycle_multiplier(billing_cycle) * (1 - discount_percent / 100))


def cycle_label(billing_cycle: str) -> str:
    if billing_cycle == "annual":
        return f"Annual ({ANNUAL_MONTHS_FREE} months free)"
    if billing_cycle == "lifetime":
        return "Lifetime"
    return "Monthly"
