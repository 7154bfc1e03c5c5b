"""Admin credit grants: the compensating operation for ledger corrections."""

import uuid
from datetime import timedelta
from typing import Any, Mapping, Optional

from .credit_types import parse_credit_type
from .errors import ValidationError
from .minter import CreditMinter, MintResult
from .purchases import PurchaseRecordManager
from .schema import is_count

ADMIN_GRANT_TIER = "admin_grant"


def grant_credits(
    purchases: PurchaseRecordManager,
    minter: CreditMinter,
    user_id: str,
    counts: Mapping[Any, int],
    note: str = "",
    expires_days: int = 30,
    granted_by: Optional[str] = None,
) -> MintResult:
    """
    Grant credits outside a paid checkout.

    History is never edited: the grant is recorded as a zero-amount purchase
    that is completed immediately and minted like any other.
    """
    if not user_id:
        raise ValidationError(["Field 'user_id' must be a non-empty string"])
    try:
        resolved = {parse_credit_type(k): v for k, v in counts.items()}
    except ValueError as e:
        raise ValidationError([str(e)])
    if not resolved or any(not is_count(v) or v <= 0 for v in resolved.values()):
        raise ValidationError(["Grant counts must be positive integers"])
    if expires_days <= 0:
        raise ValidationError(["Field 'expires_days' must be positive"])

    session_id = f"admin:{uuid.uuid4().hex}"
    purchase = purchases.create(
        user_id=user_id,
        external_session_id=session_id,
        tier=ADMIN_GRANT_TIER,
        entitlements=resolved,
        amount_cents=0,
        expires_at=purchases.now() + timedelta(days=expires_days),
        metadata={"note": note, "granted_by": granted_by},
    )
    purchases.mark_completed(purchase.id, external_payment_ref=session_id)
    return minter.mint(purchase.id)
