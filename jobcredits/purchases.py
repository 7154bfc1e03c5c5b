"""
Purchase record manager.

Creates purchase records at checkout and moves them to a terminal status.
Creation is idempotent on the external session id; status changes are a
compare-and-set on the pending status so only one caller ever performs the
pending -> terminal transition.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .credit_types import ENTITLEMENT_COLUMNS, CreditType, PurchaseStatus
from .database import Purchase, PurchaseMint, session_scope, utcnow
from .entitlements import DEFAULT_EXPIRY_DAYS, resolve_entitlement
from .errors import InvalidStatusTransition, PurchaseNotFound, ValidationError
from .logger import StructuredLogger, get_logger
from .schema import is_count, validate_checkout


class PurchaseRecordManager:
    """Owns every write to the purchases table."""

    def __init__(
        self,
        session_factory: sessionmaker,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._logger = logger or get_logger()
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def create(
        self,
        user_id: str,
        external_session_id: str,
        tier: str,
        entitlements: Mapping[CreditType, int],
        amount_cents: int,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Purchase:
        """
        Record a pending purchase, or return the one already recorded for
        this session.

        Args:
            user_id: Buyer
            external_session_id: Payment provider checkout session id
            tier: Tier / pack label stored on the purchase
            entitlements: Declared credit count per type
            amount_cents: Price in cents
            expires_at: Entitlement expiration (default: 30 days from now)
            metadata: Free-form data kept with the purchase

        Returns:
            The existing or newly created Purchase
        """
        counts = {CreditType(k): v for k, v in entitlements.items()}
        bad = [f"{t.value}={c!r}" for t, c in counts.items() if not is_count(c) or c < 0]
        if bad:
            raise ValidationError([f"Entitlement counts must be non-negative integers: {', '.join(bad)}"])

        existing = self.get_by_session(external_session_id)
        if existing is not None:
            self._logger.debug(
                "Purchase already recorded for session",
                purchase_id=existing.id,
                external_session_id=external_session_id,
            )
            return existing

        now = self._clock()
        purchase = Purchase(
            user_id=user_id,
            external_session_id=external_session_id,
            tier=tier,
            amount_cents=amount_cents,
            status=PurchaseStatus.PENDING,
            created_at=now,
            expires_at=expires_at or now + timedelta(days=DEFAULT_EXPIRY_DAYS),
            extra=dict(metadata or {}),
        )
        for credit_type, column in ENTITLEMENT_COLUMNS.items():
            setattr(purchase, column, counts.get(credit_type, 0))

        session = self._session_factory()
        try:
            session.add(purchase)
            session.commit()
        except IntegrityError:
            # Lost a race on the unique session id; the winner's row is the record
            session.rollback()
            winner = self.get_by_session(external_session_id)
            if winner is None:
                raise
            return winner
        finally:
            session.close()

        self._logger.info(
            "Purchase created",
            purchase_id=purchase.id,
            user_id=user_id,
            tier=tier,
            credits=purchase.total_entitlement,
            amount_cents=amount_cents,
        )
        return purchase

    def create_checkout(
        self,
        user_id: str,
        external_session_id: str,
        tier: Optional[str] = None,
        credit_pack: Optional[str] = None,
        addons: Iterable[str] = (),
        subscription: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Purchase:
        """Validate a checkout selection, resolve its entitlement and record it."""
        addons = list(addons)
        errors = validate_checkout({
            "user_id": user_id,
            "external_session_id": external_session_id,
            "tier": tier,
            "credit_pack": credit_pack,
            "subscription": subscription,
            "addons": addons,
        })
        if errors:
            raise ValidationError(errors)

        entitlement = resolve_entitlement(
            tier=tier, credit_pack=credit_pack, addons=addons, subscription=subscription
        )
        extra = dict(metadata or {})
        extra["addons"] = list(entitlement.addons)
        return self.create(
            user_id=user_id,
            external_session_id=external_session_id,
            tier=entitlement.tier,
            entitlements=entitlement.counts,
            amount_cents=entitlement.amount_cents,
            expires_at=entitlement.expires_at(self._clock()),
            metadata=extra,
        )

    def mark_completed(self, purchase_id: int, external_payment_ref: Optional[str] = None) -> bool:
        """
        Move a pending purchase to completed.

        Returns:
            True if this call performed the transition, False if the
            purchase was already completed

        Raises:
            InvalidStatusTransition: If the purchase already failed
            PurchaseNotFound: If no such purchase exists
        """
        return self._transition(
            purchase_id,
            PurchaseStatus.COMPLETED,
            {
                Purchase.completed_at: self._clock(),
                Purchase.external_payment_ref: external_payment_ref,
            },
        )

    def mark_failed(self, purchase_id: int, reason: str) -> bool:
        """
        Move a pending purchase to failed.

        Returns:
            True if this call performed the transition, False if the
            purchase had already failed

        Raises:
            InvalidStatusTransition: If the purchase already completed
            PurchaseNotFound: If no such purchase exists
        """
        return self._transition(purchase_id, PurchaseStatus.FAILED, {Purchase.failure_reason: reason})

    def _transition(self, purchase_id: int, target: PurchaseStatus, values: Dict[Any, Any]) -> bool:
        with session_scope(self._session_factory) as session:
            values = dict(values)
            values[Purchase.status] = target
            updated = (
                session.query(Purchase)
                .filter(Purchase.id == purchase_id, Purchase.status == PurchaseStatus.PENDING)
                .update(values, synchronize_session=False)
            )
            if updated == 1:
                self._logger.info(f"Purchase {target.value}", purchase_id=purchase_id)
                self._logger.record_status_change(target.value)
                return True

            purchase = session.get(Purchase, purchase_id)
            if purchase is None:
                raise PurchaseNotFound(purchase_id)
            if purchase.status == target:
                self._logger.debug(f"Purchase already {target.value}", purchase_id=purchase_id)
                return False

            self._logger.error(
                "Rejected status transition on terminal purchase",
                purchase_id=purchase_id,
                current=purchase.status.value,
                requested=target.value,
            )
            self._logger.record_error("InvalidStatusTransition")
            raise InvalidStatusTransition(purchase_id, purchase.status.value, target.value)

    def get(self, purchase_id: int) -> Optional[Purchase]:
        with session_scope(self._session_factory) as session:
            return session.get(Purchase, purchase_id)

    def get_by_session(self, external_session_id: str) -> Optional[Purchase]:
        with session_scope(self._session_factory) as session:
            return (
                session.query(Purchase)
                .filter_by(external_session_id=external_session_id)
                .one_or_none()
            )

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> List[Purchase]:
        """Pending purchases created before `older_than`, oldest first."""
        with session_scope(self._session_factory) as session:
            return (
                session.query(Purchase)
                .filter(Purchase.status == PurchaseStatus.PENDING, Purchase.created_at < older_than)
                .order_by(Purchase.created_at.asc(), Purchase.id.asc())
                .limit(limit)
                .all()
            )

    def list_completed_unminted(self, limit: int = 100) -> List[Purchase]:
        """Completed purchases with no mint marker (minting was interrupted)."""
        with session_scope(self._session_factory) as session:
            return (
                session.query(Purchase)
                .outerjoin(PurchaseMint, PurchaseMint.purchase_id == Purchase.id)
                .filter(Purchase.status == PurchaseStatus.COMPLETED, PurchaseMint.purchase_id.is_(None))
                .order_by(Purchase.completed_at.asc(), Purchase.id.asc())
                .limit(limit)
                .all()
            )
