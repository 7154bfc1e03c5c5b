"""
Error taxonomy for the credit ledger.

Some of these never reach callers: the reconciler turns DuplicateEvent and
UnknownPurchaseReference into acknowledged outcomes, and the minter turns
MintingAlreadyDone into a successful result.
"""

from typing import Dict, List, Optional


class LedgerError(Exception):
    """Base class for credit ledger errors."""
    pass


class ValidationError(LedgerError):
    """Input failed validation; carries the list of messages."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid input")


class DuplicateEvent(LedgerError):
    """Provider event for a purchase that is already terminal."""

    def __init__(self, external_session_id: str, status: str):
        self.external_session_id = external_session_id
        self.status = status
        super().__init__(f"Purchase for session {external_session_id} already {status}")


class UnknownPurchaseReference(LedgerError):
    """Provider event references a session with no purchase record."""

    def __init__(self, external_session_id: str):
        self.external_session_id = external_session_id
        super().__init__(f"No purchase recorded for session {external_session_id}")


class MintingAlreadyDone(LedgerError):
    """Credits for this purchase were minted by an earlier attempt."""

    def __init__(self, purchase_id: int):
        self.purchase_id = purchase_id
        super().__init__(f"Credits already minted for purchase {purchase_id}")


class InvalidStatusTransition(LedgerError):
    """Attempt to move a terminal purchase into another status."""

    def __init__(self, purchase_id: int, current: str, requested: str):
        self.purchase_id = purchase_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Purchase {purchase_id} cannot move from {current} to {requested}"
        )


class InsufficientCredits(LedgerError):
    """Not enough usable credits; shortfall maps credit type value to missing count."""

    def __init__(self, shortfall: Dict[str, int], user_id: Optional[str] = None):
        self.shortfall = dict(shortfall)
        self.user_id = user_id
        super().__init__(self.message)

    @property
    def message(self) -> str:
        parts = []
        for credit_type, missing in sorted(self.shortfall.items()):
            noun = "credit" if missing == 1 else "credits"
            parts.append(f"need {missing} more {credit_type} {noun}")
        return ", ".join(parts)


class ClaimConflict(LedgerError):
    """Credits selected for consumption were claimed by a concurrent call."""
    pass


class PurchaseNotFound(LedgerError):
    """No purchase with the given internal id."""

    def __init__(self, purchase_id: int):
        self.purchase_id = purchase_id
        super().__init__(f"Purchase {purchase_id} does not exist")
