"""
Tests for provider event reconciliation.
"""

import threading

import pytest
from sqlalchemy.exc import OperationalError

from jobcredits.credit_types import CreditType, PurchaseStatus
from jobcredits.database import Credit, session_scope
from jobcredits.purchases import PurchaseRecordManager
from jobcredits.reconciler import (
    COMPLETED,
    DUPLICATE,
    FAILED,
    IGNORED,
    INVALID,
    UNKNOWN_PURCHASE,
    EventReconciler,
    ProviderEvent,
)


def _credits_for(session_factory, purchase_id):
    with session_scope(session_factory) as session:
        return session.query(Credit).filter_by(purchase_id=purchase_id).all()


@pytest.fixture
def pro_checkout(purchases):
    return purchases.create_checkout("emp-1", "cs_pro", tier="pro")


class TestCompletion:

    def test_completion_mints_entitlement(self, reconciler, pro_checkout, completion_event, session_factory, clock):
        outcome = reconciler.handle_event(completion_event("cs_pro", "pi_1"))

        assert outcome.status == COMPLETED
        assert outcome.purchase_id == pro_checkout.id
        assert outcome.credits_minted == 12

        credits = _credits_for(session_factory, pro_checkout.id)
        assert len(credits) == 12
        assert {c.type for c in credits} == {CreditType.UNIVERSAL}
        assert all(c.expires_at == pro_checkout.expires_at for c in credits)

    def test_event_delivered_twice_mints_once(self, reconciler, pro_checkout, completion_event, session_factory):
        first = reconciler.handle_event(completion_event("cs_pro"))
        second = reconciler.handle_event(completion_event("cs_pro"))

        assert first.status == COMPLETED
        assert second.status == DUPLICATE
        assert second.credits_minted == 0
        assert len(_credits_for(session_factory, pro_checkout.id)) == 12

    def test_ten_redeliveries(self, reconciler, pro_checkout, completion_event, session_factory, logger):
        outcomes = [reconciler.handle_event(completion_event("cs_pro")) for _ in range(10)]

        assert [o.status for o in outcomes].count(COMPLETED) == 1
        assert len(_credits_for(session_factory, pro_checkout.id)) == 12
        assert logger.metrics["events_duplicate"] == 9

    def test_concurrent_deliveries_mint_once(self, reconciler, pro_checkout, completion_event, session_factory):
        outcomes = []
        barrier = threading.Barrier(6)

        def deliver():
            barrier.wait()
            outcomes.append(reconciler.handle_event(completion_event("cs_pro")))

        threads = [threading.Thread(target=deliver) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert [o.status for o in outcomes].count(COMPLETED) == 1
        assert len(_credits_for(session_factory, pro_checkout.id)) == 12

    def test_accepts_provider_event_objects(self, reconciler, pro_checkout):
        event = ProviderEvent("payment_intent.succeeded", "cs_pro", external_payment_ref="pi_9")
        assert reconciler.handle_event(event).status == COMPLETED

    def test_stores_payment_reference(self, reconciler, purchases, pro_checkout, completion_event):
        reconciler.handle_event(completion_event("cs_pro", "pi_ref"))
        stored = purchases.get(pro_checkout.id)
        assert stored.status is PurchaseStatus.COMPLETED
        assert stored.external_payment_ref == "pi_ref"

    def test_underpayment_still_completes(self, reconciler, pro_checkout, completion_event):
        outcome = reconciler.handle_event(completion_event("cs_pro", amount_paid=100))
        assert outcome.status == COMPLETED


class TestFailure:

    def test_failure_event_marks_failed_without_credits(self, reconciler, purchases, pro_checkout, session_factory):
        outcome = reconciler.handle_event({
            "event_type": "checkout.session.expired",
            "external_session_id": "cs_pro",
        })

        assert outcome.status == FAILED
        stored = purchases.get(pro_checkout.id)
        assert stored.status is PurchaseStatus.FAILED
        assert stored.failure_reason == "checkout.session.expired"
        assert _credits_for(session_factory, pro_checkout.id) == []

    def test_completion_after_failure_is_absorbed(self, reconciler, purchases, pro_checkout, completion_event,
                                                  session_factory):
        reconciler.handle_event({"event_type": "payment_intent.payment_failed", "external_session_id": "cs_pro"})
        outcome = reconciler.handle_event(completion_event("cs_pro"))

        assert outcome.status == DUPLICATE
        assert purchases.get(pro_checkout.id).status is PurchaseStatus.FAILED
        assert _credits_for(session_factory, pro_checkout.id) == []

    def test_failure_after_completion_keeps_credits(self, reconciler, purchases, pro_checkout, completion_event,
                                                    session_factory):
        reconciler.handle_event(completion_event("cs_pro"))
        outcome = reconciler.handle_event({"event_type": "checkout.session.expired", "external_session_id": "cs_pro"})

        assert outcome.status == DUPLICATE
        assert purchases.get(pro_checkout.id).status is PurchaseStatus.COMPLETED
        assert len(_credits_for(session_factory, pro_checkout.id)) == 12


class TestUnusualEvents:

    def test_unknown_session_is_acknowledged(self, reconciler, completion_event, logger):
        outcome = reconciler.handle_event(completion_event("cs_missing"))

        assert outcome.status == UNKNOWN_PURCHASE
        assert outcome.purchase_id is None
        assert logger.metrics["events_unknown"] == 1

    def test_unrelated_event_type_ignored(self, reconciler, pro_checkout, purchases):
        outcome = reconciler.handle_event({"event_type": "customer.created", "external_session_id": "cs_pro"})

        assert outcome.status == IGNORED
        assert purchases.get(pro_checkout.id).status is PurchaseStatus.PENDING

    def test_malformed_event_rejected(self, reconciler):
        outcome = reconciler.handle_event({"event_type": "checkout.session.completed"})

        assert outcome.status == INVALID
        assert "external_session_id" in outcome.detail

    def test_outcome_to_dict(self, reconciler, pro_checkout, completion_event):
        data = reconciler.handle_event(completion_event("cs_pro")).to_dict()
        assert data == {
            "status": COMPLETED,
            "purchase_id": pro_checkout.id,
            "credits_minted": 12,
            "detail": "",
        }


class TestInterruptedMint:

    def test_redelivery_after_interrupted_mint_is_noop_until_sweep(
        self, purchases, minter, logger, pro_checkout, completion_event, session_factory
    ):
        class Crashing:
            def mint(self, purchase_id):
                raise RuntimeError("process died")

        crashing = EventReconciler(purchases, Crashing(), logger=logger)
        with pytest.raises(RuntimeError):
            crashing.handle_event(completion_event("cs_pro"))

        assert purchases.get(pro_checkout.id).status is PurchaseStatus.COMPLETED
        assert [p.id for p in purchases.list_completed_unminted()] == [pro_checkout.id]

        healthy = EventReconciler(purchases, minter, logger=logger)
        assert healthy.handle_event(completion_event("cs_pro")).status == DUPLICATE
        assert _credits_for(session_factory, pro_checkout.id) == []


class TestStorageErrors:

    def test_storage_error_is_logged_and_raised(self, minter, logger, completion_event, clock):
        def unavailable():
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        broken = EventReconciler(PurchaseRecordManager(unavailable, logger=logger, clock=clock), minter, logger=logger)

        with pytest.raises(OperationalError):
            broken.handle_event(completion_event("cs_pro"))
        assert logger.metrics["errors_by_type"]["StorageError"] == 1

    def test_redelivery_after_storage_error_completes(
        self, reconciler, purchases, pro_checkout, completion_event, session_factory, logger, monkeypatch
    ):
        real_mark_completed = purchases.mark_completed

        def locked(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        monkeypatch.setattr(purchases, "mark_completed", locked)
        with pytest.raises(OperationalError):
            reconciler.handle_event(completion_event("cs_pro"))
        assert purchases.get(pro_checkout.id).status is PurchaseStatus.PENDING

        monkeypatch.setattr(purchases, "mark_completed", real_mark_completed)
        outcome = reconciler.handle_event(completion_event("cs_pro"))
        assert outcome.status == COMPLETED
        assert len(_credits_for(session_factory, pro_checkout.id)) == 12
        assert logger.metrics["errors_by_type"]["StorageError"] == 1
