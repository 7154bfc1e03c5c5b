"""
Tests for the operator scripts.
"""

import importlib.util
import json
from pathlib import Path

import pytest

from jobcredits.credit_types import CreditType
from jobcredits.database import Credit, session_scope
from jobcredits.logger import reset_logger

SCRIPTS = Path(__file__).parent.parent / "scripts"


def _load(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def replay_events():
    return _load("replay_events")


@pytest.fixture
def audit_ledger():
    return _load("audit_ledger")


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch):
    monkeypatch.setenv("JOBCREDITS_LOG_LEVEL", "CRITICAL")
    monkeypatch.delenv("JOBCREDITS_LOG_DIR", raising=False)
    reset_logger()
    yield
    reset_logger()


class TestReplayEvents:

    def test_load_json_lines(self, replay_events, tmp_path):
        path = tmp_path / "events.jsonl"
        path.write_text(
            '{"event_type": "checkout.session.completed", "external_session_id": "cs_1"}\n'
            '\n'
            '{"event_type": "checkout.session.expired", "external_session_id": "cs_2"}\n',
            encoding="utf-8",
        )
        assert [e["external_session_id"] for e in replay_events.load_events(path)] == ["cs_1", "cs_2"]

    def test_load_wrapped_list(self, replay_events, tmp_path):
        path = tmp_path / "events.json"
        path.write_text(json.dumps({"events": [{"external_session_id": "cs_1"}]}), encoding="utf-8")
        assert replay_events.load_events(path) == [{"external_session_id": "cs_1"}]

    def test_replay_twice_is_stable(self, replay_events, purchases, session_factory, db_path, tmp_path):
        purchases.create_checkout("emp-1", "cs_pro", tier="pro")
        purchases.create_checkout("emp-2", "cs_gone", tier="starter")
        path = tmp_path / "events.json"
        path.write_text(json.dumps([
            {"event_type": "checkout.session.completed", "external_session_id": "cs_pro"},
            {"event_type": "checkout.session.completed", "external_session_id": "cs_pro"},
            {"event_type": "checkout.session.expired", "external_session_id": "cs_gone"},
            {"event_type": "checkout.session.completed", "external_session_id": "cs_nobody"},
        ]), encoding="utf-8")

        first = replay_events.replay(path, db_path)
        second = replay_events.replay(path, db_path)

        assert first == {"completed": 1, "duplicate": 1, "failed": 1, "unknown_purchase": 1}
        assert second == {"duplicate": 3, "unknown_purchase": 1}
        with session_scope(session_factory) as session:
            assert session.query(Credit).count() == 12

    def test_dry_run_validates_only(self, replay_events, tmp_path, db_path):
        path = tmp_path / "events.json"
        path.write_text(json.dumps([
            {"event_type": "checkout.session.completed", "external_session_id": "cs_1"},
            {"event_type": "customer.created", "external_session_id": "cs_1"},
        ]), encoding="utf-8")

        counts = replay_events.replay(path, db_path, dry_run=True)

        assert counts == {"valid": 1, "invalid": 1}
        assert not db_path.exists()


class TestAuditLedger:

    def test_clean_ledger(self, audit_ledger, fund_user, purchases, db_path, consumption):
        fund_user("emp-1", {CreditType.UNIVERSAL: 2})
        purchases.create_checkout("emp-1", "cs_pending", tier="pro")
        consumption.use_credits("emp-1", "job-1", {CreditType.JOB_POST: 1})

        assert audit_ledger.audit(db_path) == []

    def test_reports_unminted_and_unstamped(self, audit_ledger, fund_user, purchases, session_factory, db_path):
        funded = fund_user("emp-1", {CreditType.UNIVERSAL: 1})
        stuck = purchases.create("emp-1", "cs_stuck", "pro", {CreditType.UNIVERSAL: 12}, 20000)
        purchases.mark_completed(stuck.id)
        with session_scope(session_factory) as session:
            credit = session.query(Credit).filter_by(purchase_id=funded.id).one()
            credit.used = True

        checks = {p["check"] for p in audit_ledger.audit(db_path)}
        assert checks == {"unminted", "used_without_action"}

    def test_reports_extra_credit(self, audit_ledger, fund_user, session_factory, db_path):
        funded = fund_user("emp-1", {CreditType.UNIVERSAL: 1})
        with session_scope(session_factory) as session:
            session.add(Credit(
                user_id="emp-1",
                purchase_id=funded.id,
                type=CreditType.UNIVERSAL,
                expires_at=funded.expires_at,
            ))

        [problem] = audit_ledger.audit(db_path)
        assert problem["check"] == "credit_count"
        assert problem["purchase_id"] == funded.id
