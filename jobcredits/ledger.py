"""
Balance calculator.

Balances are never stored: every call counts unused, unexpired credit rows.
The credit table is the single source of truth.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Union

from sqlalchemy import case, func
from sqlalchemy.orm import Session, sessionmaker

from .credit_types import FALLBACK_ORDER, CreditType, empty_counts, parse_credit_type
from .database import Credit, Purchase, session_scope, utcnow


def _usable(now: datetime):
    return (Credit.used.is_(False), Credit.expires_at > now)


def balance_dict(counts: Dict[CreditType, int]) -> Dict[str, int]:
    """Render per-type counts as {type value: count, ..., "total": n}."""
    result = {t.value: counts.get(t, 0) for t in CreditType}
    result["total"] = sum(result.values())
    return result


def count_usable(session: Session, user_id: str, now: datetime) -> Dict[CreditType, int]:
    """Unused, unexpired credit counts per type for one user."""
    rows = (
        session.query(Credit.type, func.count(Credit.id))
        .filter(Credit.user_id == user_id, *_usable(now))
        .group_by(Credit.type)
        .all()
    )
    counts = empty_counts()
    for credit_type, count in rows:
        counts[credit_type] = count
    return counts


@dataclass
class PurchaseSummary:
    """A purchase annotated with how many of its credits were used."""

    id: int
    external_session_id: str
    tier: str
    status: str
    amount_cents: int
    created_at: datetime
    expires_at: datetime
    credits_total: int
    credits_used: int
    credits_expired: int
    entitlements: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_session_id": self.external_session_id,
            "tier": self.tier,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "credits_total": self.credits_total,
            "credits_used": self.credits_used,
            "credits_expired": self.credits_expired,
            "entitlements": dict(self.entitlements),
        }


class BalanceCalculator:
    """Read-side queries over credits and purchases."""

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def get_balance(self, user_id: str) -> Dict[str, int]:
        """
        Usable credits per type plus total.

        Returns:
            {"universal", "job_post", "featured_post", "social_graphic",
            "repost", "total"} counts
        """
        with session_scope(self._session_factory) as session:
            return balance_dict(count_usable(session, user_id, self._clock()))

    def can_use(self, user_id: str, credit_type: Union[str, CreditType], count: int = 1) -> bool:
        """Whether a request for `count` credits of a type would succeed right now."""
        credit_type = parse_credit_type(credit_type)
        with session_scope(self._session_factory) as session:
            counts = count_usable(session, user_id, self._clock())
        available = sum(counts[t] for t in FALLBACK_ORDER[credit_type])
        return available >= count

    def get_expiring_soon(self, user_id: str, within_days: int = 7) -> List[Credit]:
        """Unused credits whose expiration falls within the next `within_days` days, soonest first."""
        now = self._clock()
        horizon = now + timedelta(days=within_days)
        with session_scope(self._session_factory) as session:
            return (
                session.query(Credit)
                .filter(Credit.user_id == user_id, *_usable(now), Credit.expires_at <= horizon)
                .order_by(Credit.expires_at.asc(), Credit.id.asc())
                .all()
            )

    def get_purchase_history(self, user_id: str, limit: int = 20) -> List[PurchaseSummary]:
        """Purchases newest first, each with total / used / expired credit counts."""
        now = self._clock()
        with session_scope(self._session_factory) as session:
            purchases = (
                session.query(Purchase)
                .filter(Purchase.user_id == user_id)
                .order_by(Purchase.created_at.desc(), Purchase.id.desc())
                .limit(limit)
                .all()
            )
            if not purchases:
                return []

            ids = [p.id for p in purchases]
            rows = (
                session.query(
                    Credit.purchase_id,
                    func.count(Credit.id),
                    func.sum(case((Credit.used.is_(True), 1), else_=0)),
                    func.sum(case(((Credit.used.is_(False)) & (Credit.expires_at <= now), 1), else_=0)),
                )
                .filter(Credit.purchase_id.in_(ids))
                .group_by(Credit.purchase_id)
                .all()
            )
            stats = {pid: (total, used or 0, expired or 0) for pid, total, used, expired in rows}

            history = []
            for p in purchases:
                total, used, expired = stats.get(p.id, (0, 0, 0))
                history.append(PurchaseSummary(
                    id=p.id,
                    external_session_id=p.external_session_id,
                    tier=p.tier,
                    status=p.status.value,
                    amount_cents=p.amount_cents,
                    created_at=p.created_at,
                    expires_at=p.expires_at,
                    credits_total=total,
                    credits_used=used,
                    credits_expired=expired,
                    entitlements={t.value: c for t, c in p.entitlements().items() if c},
                ))
            return history

    def get_credit_stats(self) -> Dict[str, Any]:
        """
        Platform-wide totals for the admin dashboard: issued, used,
        expired (never used), active, and active credits by type.
        """
        now = self._clock()
        with session_scope(self._session_factory) as session:
            issued = session.query(func.count(Credit.id)).scalar() or 0
            used = session.query(func.count(Credit.id)).filter(Credit.used.is_(True)).scalar() or 0
            expired = (
                session.query(func.count(Credit.id))
                .filter(Credit.used.is_(False), Credit.expires_at <= now)
                .scalar()
                or 0
            )
            by_type_rows = (
                session.query(Credit.type, func.count(Credit.id))
                .filter(*_usable(now))
                .group_by(Credit.type)
                .all()
            )
            holders = (
                session.query(func.count(func.distinct(Credit.user_id)))
                .filter(*_usable(now))
                .scalar()
                or 0
            )

        by_type = empty_counts()
        for credit_type, count in by_type_rows:
            by_type[credit_type] = count
        return {
            "total_issued": issued,
            "total_used": used,
            "total_expired": expired,
            "active": issued - used - expired,
            "active_by_type": {t.value: c for t, c in by_type.items()},
            "users_with_credits": holders,
        }
