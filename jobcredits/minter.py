"""
Credit minter.

Expands a completed purchase into individual credit rows, exactly once.
The mint marker row and every credit row go in one transaction; the marker's
primary key on purchase_id means a second, concurrent mint fails at insert
time and is reported as already done.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .credit_types import PurchaseStatus
from .database import Credit, Purchase, PurchaseMint, utcnow
from .errors import InvalidStatusTransition, MintingAlreadyDone, PurchaseNotFound
from .logger import StructuredLogger, get_logger


@dataclass
class MintResult:
    purchase_id: int
    created: int
    already_minted: bool = False


class CreditMinter:
    """Turns a completed purchase's entitlement into credits."""

    def __init__(
        self,
        session_factory: sessionmaker,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._logger = logger or get_logger()
        self._clock = clock

    def mint(self, purchase_id: int) -> MintResult:
        """
        Mint credits for a completed purchase.

        Safe to call any number of times, concurrently included: only the
        first successful call creates credits, later ones return
        already_minted=True.

        Raises:
            PurchaseNotFound: If the purchase does not exist
            InvalidStatusTransition: If the purchase is not completed
        """
        try:
            created = self._mint_once(purchase_id)
        except MintingAlreadyDone:
            self._logger.debug("Credits already minted", purchase_id=purchase_id)
            self._logger.record_mint(0)
            return MintResult(purchase_id=purchase_id, created=0, already_minted=True)

        self._logger.record_mint(created)
        self._logger.info("Credits minted", purchase_id=purchase_id, credits=created)
        return MintResult(purchase_id=purchase_id, created=created)

    def _mint_once(self, purchase_id: int) -> int:
        session = self._session_factory()
        try:
            purchase = session.get(Purchase, purchase_id)
            if purchase is None:
                raise PurchaseNotFound(purchase_id)
            if purchase.status != PurchaseStatus.COMPLETED:
                raise InvalidStatusTransition(purchase_id, purchase.status.value, "minted")

            if self._already_minted(session, purchase_id):
                raise MintingAlreadyDone(purchase_id)

            now = self._clock()
            credits = self._build_credits(purchase, now)
            session.add(PurchaseMint(purchase_id=purchase_id, credit_count=len(credits), minted_at=now))
            # Marker first so a concurrent minter fails before writing credits
            session.flush()
            session.add_all(credits)
            session.commit()
            return len(credits)
        except IntegrityError:
            session.rollback()
            if self._already_minted(session, purchase_id):
                raise MintingAlreadyDone(purchase_id)
            self._logger.error("Mint batch failed; rolled back", purchase_id=purchase_id)
            self._logger.record_error("MintFailed")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _already_minted(session: Session, purchase_id: int) -> bool:
        if session.get(PurchaseMint, purchase_id) is not None:
            return True
        # Credits minted before the marker table existed also count
        return session.query(Credit.id).filter(Credit.purchase_id == purchase_id).first() is not None

    def _build_credits(self, purchase: Purchase, now: datetime) -> List[Credit]:
        credits = []
        for credit_type, count in purchase.entitlements().items():
            for _ in range(count):
                credits.append(Credit(
                    user_id=purchase.user_id,
                    purchase_id=purchase.id,
                    type=credit_type,
                    used=False,
                    expires_at=purchase.expires_at,
                    created_at=now,
                ))
        return credits
