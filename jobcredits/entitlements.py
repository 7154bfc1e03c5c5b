"""
Tier, credit-pack and add-on catalog.

Maps what a buyer selects at checkout to the credits it entitles them to
and when those credits expire. Prices are in cents.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, Mapping, Optional

from .credit_types import CreditType, empty_counts

DEFAULT_EXPIRY_DAYS = 30


@dataclass(frozen=True)
class Offer:
    """A purchasable item and the credits it grants."""

    key: str
    name: str
    price_cents: int
    credits: Mapping[CreditType, int]
    expiry_days: int = DEFAULT_EXPIRY_DAYS
    recurring: bool = False


@dataclass
class Entitlement:
    """Resolved credit counts for one checkout."""

    tier: str
    counts: Dict[CreditType, int] = field(default_factory=empty_counts)
    amount_cents: int = 0
    expiry_days: int = DEFAULT_EXPIRY_DAYS
    addons: tuple = ()

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def expires_at(self, purchased_at: datetime) -> datetime:
        return purchased_at + timedelta(days=self.expiry_days)

    def add(self, credits: Mapping[CreditType, int]) -> None:
        for credit_type, count in credits.items():
            self.counts[credit_type] = self.counts.get(credit_type, 0) + count


TIERS: Dict[str, Offer] = {
    "starter": Offer("starter", "Starter Tier", 5000, {CreditType.UNIVERSAL: 2}),
    "standard": Offer("standard", "Standard Tier", 9900, {CreditType.UNIVERSAL: 5}),
    "pro": Offer("pro", "Pro Tier", 20000, {CreditType.UNIVERSAL: 12}),
}

CREDIT_PACKS: Dict[str, Offer] = {
    "singleCredit": Offer("singleCredit", "1 Job Credit", 5900, {CreditType.UNIVERSAL: 1}),
    "fiveCredits": Offer("fiveCredits", "5 Job Credits", 24900, {CreditType.UNIVERSAL: 5}),
}

ADDONS: Dict[str, Offer] = {
    "featuredPost": Offer("featuredPost", "Featured Post", 4900, {CreditType.FEATURED_POST: 1}),
    "socialGraphic": Offer("socialGraphic", "Social Graphic", 2900, {CreditType.SOCIAL_GRAPHIC: 1}),
    "featureAndSocialBundle": Offer(
        "featureAndSocialBundle",
        "Feature + Social Bundle",
        6900,
        {CreditType.FEATURED_POST: 1, CreditType.SOCIAL_GRAPHIC: 1},
    ),
}

# Recurring tiers: credits are re-issued each billing period via a new purchase
SUBSCRIPTION_TIERS: Dict[str, Offer] = {
    "basic": Offer("basic", "Basic", 2900, {CreditType.UNIVERSAL: 3}, recurring=True),
    "essential": Offer("essential", "Essential", 4900, {CreditType.UNIVERSAL: 5}, recurring=True),
    "professional": Offer("professional", "Professional", 7900, {CreditType.UNIVERSAL: 8}, recurring=True),
    "enterprise": Offer("enterprise", "Enterprise", 14900, {CreditType.UNIVERSAL: 15}, recurring=True),
    "premium": Offer("premium", "Premium", 19900, {CreditType.UNIVERSAL: 20}, recurring=True),
}


def tier_label(tier: Optional[str] = None, credit_pack: Optional[str] = None, subscription: Optional[str] = None) -> str:
    """Value stored in Purchase.tier for a selection."""
    if tier:
        return tier
    if credit_pack:
        return f"credit_pack_{credit_pack}"
    if subscription:
        return f"subscription_{subscription}"
    return ""


def resolve_entitlement(
    tier: Optional[str] = None,
    credit_pack: Optional[str] = None,
    addons: Iterable[str] = (),
    subscription: Optional[str] = None,
) -> Entitlement:
    """
    Resolve a checkout selection into credit counts, price and expiry.

    Exactly one of tier, credit_pack or subscription must be given.

    Raises:
        KeyError: If any key is not in the catalog
        ValueError: If zero or several base offers are selected
    """
    selected = [s for s in (tier, credit_pack, subscription) if s]
    if len(selected) != 1:
        raise ValueError("Exactly one of tier, credit pack or subscription must be specified")

    if tier:
        base = TIERS[tier]
    elif credit_pack:
        base = CREDIT_PACKS[credit_pack]
    else:
        base = SUBSCRIPTION_TIERS[subscription]

    entitlement = Entitlement(
        tier=tier_label(tier, credit_pack, subscription),
        amount_cents=base.price_cents,
        expiry_days=base.expiry_days,
    )
    entitlement.add(base.credits)

    addon_keys = []
    for key in addons:
        addon = ADDONS[key]
        entitlement.add(addon.credits)
        entitlement.amount_cents += addon.price_cents
        addon_keys.append(key)
    entitlement.addons = tuple(addon_keys)

    return entitlement
