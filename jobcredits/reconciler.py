"""
Event reconciler.

Consumes payment provider notifications. Delivery is at-least-once and may
be duplicated or out of order, so every event is handled idempotently:
only a pending purchase is ever moved, and the move is a compare-and-set in
the purchase manager followed by a mint guarded by the mint marker.

Outcomes are acknowledged (returned) rather than raised, except storage
errors, which propagate so the provider redelivers.
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from .credit_types import PurchaseStatus
from .errors import DuplicateEvent, InvalidStatusTransition, UnknownPurchaseReference
from .logger import StructuredLogger, get_logger
from .minter import CreditMinter
from .purchases import PurchaseRecordManager
from .schema import COMPLETION_EVENTS, FAILURE_EVENTS, validate_event

COMPLETED = "completed"
FAILED = "failed"
DUPLICATE = "duplicate"
UNKNOWN_PURCHASE = "unknown_purchase"
IGNORED = "ignored"
INVALID = "invalid"


@dataclass(frozen=True)
class ProviderEvent:
    """Payment provider completion notification."""

    event_type: str
    external_session_id: str
    external_payment_ref: Optional[str] = None
    amount_paid: Optional[int] = None  # cents

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProviderEvent":
        return cls(
            event_type=data["event_type"],
            external_session_id=data["external_session_id"],
            external_payment_ref=data.get("external_payment_ref"),
            amount_paid=data.get("amount_paid"),
        )


@dataclass
class EventOutcome:
    status: str
    purchase_id: Optional[int] = None
    credits_minted: int = 0
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "purchase_id": self.purchase_id,
            "credits_minted": self.credits_minted,
            "detail": self.detail,
        }


class EventReconciler:
    """Drives purchases from pending to terminal exactly once per purchase."""

    def __init__(
        self,
        purchases: PurchaseRecordManager,
        minter: CreditMinter,
        logger: Optional[StructuredLogger] = None,
    ):
        self._purchases = purchases
        self._minter = minter
        self._logger = logger or get_logger()

    def handle_event(self, event) -> EventOutcome:
        """
        Handle one provider notification.

        Args:
            event: ProviderEvent or a dict with the same keys

        Returns:
            EventOutcome describing what happened
        """
        if not isinstance(event, ProviderEvent):
            errors = validate_event(event)
            if errors:
                self._logger.warning("Rejected malformed provider event", errors=errors)
                self._logger.record_error("InvalidEvent")
                return self._outcome(EventOutcome(INVALID, detail="; ".join(errors)))
            event = ProviderEvent.from_dict(event)

        if event.event_type in COMPLETION_EVENTS:
            target = PurchaseStatus.COMPLETED
        elif event.event_type in FAILURE_EVENTS:
            target = PurchaseStatus.FAILED
        else:
            self._logger.debug("Ignoring provider event type", event_type=event.event_type)
            return self._outcome(EventOutcome(IGNORED, detail=event.event_type))

        try:
            return self._outcome(self._apply(event, target))
        except UnknownPurchaseReference as e:
            self._logger.warning(
                "Provider event references unknown purchase",
                external_session_id=e.external_session_id,
                event_type=event.event_type,
            )
            return self._outcome(EventOutcome(UNKNOWN_PURCHASE, detail=str(e)))
        except DuplicateEvent as e:
            self._logger.debug(
                "Duplicate provider event absorbed",
                external_session_id=e.external_session_id,
                status=e.status,
            )
            return self._outcome(EventOutcome(DUPLICATE, detail=str(e)))
        except InvalidStatusTransition as e:
            # Lost a race against a contradicting event; the manager logged it
            return self._outcome(EventOutcome(DUPLICATE, purchase_id=e.purchase_id, detail=str(e)))
        except SQLAlchemyError as e:
            self._logger.error(
                "Storage error handling provider event",
                external_session_id=event.external_session_id,
                event_type=event.event_type,
                error=str(e),
            )
            self._logger.record_error("StorageError")
            raise

    def _apply(self, event: ProviderEvent, target: PurchaseStatus) -> EventOutcome:
        purchase = self._purchases.get_by_session(event.external_session_id)
        if purchase is None:
            raise UnknownPurchaseReference(event.external_session_id)

        if purchase.status.is_terminal:
            if purchase.status != target:
                self._logger.warning(
                    "Provider event contradicts terminal purchase status",
                    purchase_id=purchase.id,
                    current=purchase.status.value,
                    event_type=event.event_type,
                )
            raise DuplicateEvent(event.external_session_id, purchase.status.value)

        if target is PurchaseStatus.FAILED:
            if not self._purchases.mark_failed(purchase.id, reason=event.event_type):
                raise DuplicateEvent(event.external_session_id, target.value)
            return EventOutcome(FAILED, purchase_id=purchase.id)

        if event.amount_paid is not None and event.amount_paid < purchase.amount_cents:
            self._logger.warning(
                "Amount paid below purchase amount",
                purchase_id=purchase.id,
                amount_paid=event.amount_paid,
                amount_cents=purchase.amount_cents,
            )

        if not self._purchases.mark_completed(purchase.id, event.external_payment_ref):
            # Another delivery completed it between our read and our update
            raise DuplicateEvent(event.external_session_id, target.value)

        result = self._minter.mint(purchase.id)
        return EventOutcome(COMPLETED, purchase_id=purchase.id, credits_minted=result.created)

    def _outcome(self, outcome: EventOutcome) -> EventOutcome:
        self._logger.record_event(outcome.status)
        return outcome
