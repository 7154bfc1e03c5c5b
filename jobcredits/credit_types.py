"""
Credit types and the fallback table used when consuming credits.

Every place that needs to decide which credits may satisfy a request goes
through FALLBACK_ORDER; there are no string comparisons elsewhere.
"""

import enum
from typing import Dict, Tuple, Union


class CreditType(str, enum.Enum):
    """Closed set of credit categories."""

    UNIVERSAL = "universal"
    JOB_POST = "job_post"
    FEATURED_POST = "featured_post"
    SOCIAL_GRAPHIC = "social_graphic"
    REPOST = "repost"


class PurchaseStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PurchaseStatus.PENDING


# Exact type first, then universal for any remainder.
FALLBACK_ORDER: Dict[CreditType, Tuple[CreditType, ...]] = {
    CreditType.UNIVERSAL: (CreditType.UNIVERSAL,),
    CreditType.JOB_POST: (CreditType.JOB_POST, CreditType.UNIVERSAL),
    CreditType.FEATURED_POST: (CreditType.FEATURED_POST, CreditType.UNIVERSAL),
    CreditType.SOCIAL_GRAPHIC: (CreditType.SOCIAL_GRAPHIC, CreditType.UNIVERSAL),
    CreditType.REPOST: (CreditType.REPOST, CreditType.UNIVERSAL),
}

# Column on the purchases table holding the declared count for each type.
ENTITLEMENT_COLUMNS: Dict[CreditType, str] = {
    CreditType.UNIVERSAL: "universal_credits",
    CreditType.JOB_POST: "job_post_credits",
    CreditType.FEATURED_POST: "featured_post_credits",
    CreditType.SOCIAL_GRAPHIC: "social_graphic_credits",
    CreditType.REPOST: "repost_credits",
}


def parse_credit_type(value: Union[str, CreditType]) -> CreditType:
    """
    Coerce a string (value or member name) into a CreditType.

    Raises:
        ValueError: If the value names no known credit type
    """
    if isinstance(value, CreditType):
        return value
    key = str(value).strip().lower().replace("-", "_")
    try:
        return CreditType(key)
    except ValueError:
        valid = ", ".join(t.value for t in CreditType)
        raise ValueError(f"Unknown credit type '{value}' (expected one of: {valid})")


def empty_counts() -> Dict[CreditType, int]:
    return {t: 0 for t in CreditType}
