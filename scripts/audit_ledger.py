#!/usr/bin/env python3
"""
Audit the credit ledger for integrity problems.

Checks that every minted purchase has exactly its declared credits, that
completed purchases were minted, that only completed purchases carry
credits, and that used credits record what they were used for.

Usage:
    python scripts/audit_ledger.py --db data/credits.db
"""

import argparse
from pathlib import Path
import sys

from sqlalchemy import func

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from jobcredits.credit_types import PurchaseStatus
from jobcredits.database import Credit, Purchase, PurchaseMint, get_session


def audit(db_target):
    """
    Inspect the ledger.

    Returns:
        List of problems, each {"purchase_id" or "credit_id", "check", "detail"}
    """
    problems = []
    session = get_session(db_target)
    try:
        minted = {m.purchase_id: m.credit_count for m in session.query(PurchaseMint).all()}
        credit_counts = dict(
            session.query(Credit.purchase_id, func.count(Credit.id)).group_by(Credit.purchase_id).all()
        )

        for purchase in session.query(Purchase).order_by(Purchase.id).all():
            actual = credit_counts.get(purchase.id, 0)
            if purchase.status != PurchaseStatus.COMPLETED:
                if actual or purchase.id in minted:
                    problems.append({
                        "purchase_id": purchase.id,
                        "check": "credits_on_unpaid_purchase",
                        "detail": f"status={purchase.status.value} credits={actual}",
                    })
                continue

            if purchase.id not in minted:
                problems.append({
                    "purchase_id": purchase.id,
                    "check": "unminted",
                    "detail": f"completed with {actual} credit(s) and no mint marker",
                })
                continue

            expected = purchase.total_entitlement
            if actual != expected or minted[purchase.id] != expected:
                problems.append({
                    "purchase_id": purchase.id,
                    "check": "credit_count",
                    "detail": f"entitlement={expected} marker={minted[purchase.id]} credits={actual}",
                })

        unstamped = (
            session.query(Credit.id)
            .filter(Credit.used.is_(True), (Credit.used_for.is_(None)) | (Credit.used_at.is_(None)))
            .all()
        )
        for (credit_id,) in unstamped:
            problems.append({
                "credit_id": credit_id,
                "check": "used_without_action",
                "detail": "used credit missing used_for/used_at",
            })

        drifted = (
            session.query(Credit.id)
            .join(Purchase, Purchase.id == Credit.purchase_id)
            .filter((Credit.expires_at != Purchase.expires_at) | (Credit.user_id != Purchase.user_id))
            .all()
        )
        for (credit_id,) in drifted:
            problems.append({
                "credit_id": credit_id,
                "check": "credit_purchase_mismatch",
                "detail": "owner or expiry differs from purchase",
            })
    finally:
        session.close()

    return problems


def main():
    parser = argparse.ArgumentParser(description="Audit credit ledger integrity")
    parser.add_argument("--db", type=Path, default=Path("data/credits.db"),
                        help="Path to SQLite database file")

    args = parser.parse_args()

    if not args.db.exists():
        print(f"❌ Database file not found: {args.db}")
        sys.exit(1)

    print(f"Auditing ledger at {args.db}...")
    problems = audit(args.db)

    if not problems:
        print("✅ Ledger is consistent")
        print("   - Every completed purchase minted exactly its entitlement")
        print("   - Every used credit records its action")
        sys.exit(0)

    print(f"\n❌ {len(problems)} problem(s) found")
    for problem in problems[:20]:
        ref = problem.get("purchase_id", problem.get("credit_id"))
        print(f"   - [{problem['check']}] {ref}: {problem['detail']}")
    if len(problems) > 20:
        print(f"   ... and {len(problems) - 20} more")
    sys.exit(1)


if __name__ == "__main__":
    main()
