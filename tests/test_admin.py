"""
Tests for admin credit grants.
"""

from datetime import timedelta

import pytest

from jobcredits.admin import ADMIN_GRANT_TIER, grant_credits
from jobcredits.credit_types import PurchaseStatus
from jobcredits.errors import ValidationError


class TestGrantCredits:

    def test_grant_mints_immediately(self, purchases, minter, ledger, clock):
        result = grant_credits(purchases, minter, "emp-1", {"job_post": 2, "repost": 1},
                               note="support ticket 118", granted_by="admin-3")

        assert result.created == 3
        purchase = purchases.get(result.purchase_id)
        assert purchase.tier == ADMIN_GRANT_TIER
        assert purchase.status is PurchaseStatus.COMPLETED
        assert purchase.amount_cents == 0
        assert purchase.external_session_id.startswith("admin:")
        assert purchase.expires_at == clock() + timedelta(days=30)
        assert purchase.extra == {"note": "support ticket 118", "granted_by": "admin-3"}

        balance = ledger.get_balance("emp-1")
        assert balance["job_post"] == 2
        assert balance["repost"] == 1

    def test_grants_are_separate_purchases(self, purchases, minter, ledger):
        first = grant_credits(purchases, minter, "emp-1", {"universal": 1})
        second = grant_credits(purchases, minter, "emp-1", {"universal": 1})

        assert first.purchase_id != second.purchase_id
        assert ledger.get_balance("emp-1")["universal"] == 2

    def test_custom_expiry(self, purchases, minter, clock):
        result = grant_credits(purchases, minter, "emp-1", {"universal": 1}, expires_days=90)
        assert purchases.get(result.purchase_id).expires_at == clock() + timedelta(days=90)

    @pytest.mark.parametrize("counts", [{}, {"universal": 0}, {"gold": 1}, {"universal": True}, {"universal": 1.5}])
    def test_invalid_counts(self, purchases, minter, counts):
        with pytest.raises(ValidationError):
            grant_credits(purchases, minter, "emp-1", counts)

    def test_user_required(self, purchases, minter):
        with pytest.raises(ValidationError):
            grant_credits(purchases, minter, "", {"universal": 1})
