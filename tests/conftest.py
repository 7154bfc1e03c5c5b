"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timedelta
from typing import Dict

import pytest

from jobcredits.credit_types import CreditType
from jobcredits.database import get_session_factory, init_database
from jobcredits.consumption import ConsumptionService
from jobcredits.ledger import BalanceCalculator
from jobcredits.logger import StructuredLogger
from jobcredits.minter import CreditMinter
from jobcredits.purchases import PurchaseRecordManager
from jobcredits.reconciler import EventReconciler


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def logger() -> StructuredLogger:
    """Quiet logger with fresh metrics."""
    return StructuredLogger(name="jobcredits-test", level="DEBUG", enable_console=False, enable_file=False)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "credits.db"


@pytest.fixture
def session_factory(db_path):
    engine = init_database(db_path)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def purchases(session_factory, logger, clock) -> PurchaseRecordManager:
    return PurchaseRecordManager(session_factory, logger=logger, clock=clock)


@pytest.fixture
def minter(session_factory, logger, clock) -> CreditMinter:
    return CreditMinter(session_factory, logger=logger, clock=clock)


@pytest.fixture
def reconciler(purchases, minter, logger) -> EventReconciler:
    return EventReconciler(purchases, minter, logger=logger)


@pytest.fixture
def ledger(session_factory, clock) -> BalanceCalculator:
    return BalanceCalculator(session_factory, clock=clock)


@pytest.fixture
def consumption(session_factory, logger, clock) -> ConsumptionService:
    return ConsumptionService(session_factory, logger=logger, clock=clock)


@pytest.fixture
def completion_event():
    """Build a checkout-completed provider notification."""
    def _event(session_id: str, payment_ref: str = "pi_123", amount_paid: int = 20000) -> Dict:
        return {
            "event_type": "checkout.session.completed",
            "external_session_id": session_id,
            "external_payment_ref": payment_ref,
            "amount_paid": amount_paid,
        }
    return _event


@pytest.fixture
def fund_user(purchases, minter, clock):
    """Give a user minted credits: fund_user("u1", {CreditType.JOB_POST: 2}, days=30)."""
    counter = {"n": 0}

    def _fund(user_id: str, counts: Dict[CreditType, int], days: int = 30):
        counter["n"] += 1
        purchase = purchases.create(
            user_id=user_id,
            external_session_id=f"cs_fund_{user_id}_{counter['n']}",
            tier="test",
            entitlements=counts,
            amount_cents=0,
            expires_at=clock() + timedelta(days=days),
        )
        purchases.mark_completed(purchase.id, "pi_fund")
        minter.mint(purchase.id)
        return purchase

    return _fund
