"""
Consumption service.

Debits credits for a gated action (publish, feature, social graphic,
repost). A call either debits every requested credit or none:
candidates are selected and claimed in one transaction, and the claim is an
UPDATE that only touches still-unused rows. If fewer rows are claimed than
planned, a concurrent caller got there first; the transaction is rolled back
and the whole plan is recomputed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from .credit_types import FALLBACK_ORDER, CreditType, parse_credit_type
from .database import Credit, utcnow
from .errors import ClaimConflict, InsufficientCredits, ValidationError
from .ledger import balance_dict, count_usable
from .logger import StructuredLogger, get_logger
from .schema import validate_requested

MAX_CLAIM_ATTEMPTS = 3


@dataclass
class UseResult:
    """Outcome of a consumption request."""

    success: bool
    remaining_balance: Dict[str, int]
    consumed_ids: List[int] = field(default_factory=list)
    consumed_by_type: Dict[str, int] = field(default_factory=dict)
    shortfall: Dict[str, int] = field(default_factory=dict)

    @property
    def message(self) -> str:
        if self.success:
            return f"used {len(self.consumed_ids)} credit(s)"
        return InsufficientCredits(self.shortfall).message

    def to_dict(self) -> Dict[str, Any]:
        data = {"success": self.success, "remaining_balance": dict(self.remaining_balance)}
        if self.success:
            data["consumed_ids"] = list(self.consumed_ids)
            data["consumed_by_type"] = dict(self.consumed_by_type)
        else:
            data["shortfall"] = dict(self.shortfall)
            data["message"] = self.message
        return data


def plan_consumption(
    wanted: Mapping[CreditType, int],
    pools: Mapping[CreditType, List[int]],
) -> Tuple[Dict[CreditType, List[int]], Dict[CreditType, int]]:
    """
    Choose credit ids for each requested type following FALLBACK_ORDER.

    Pools must already be ordered soonest-expiring first. Every fallback
    step is filled for all requested types before the next step, so a
    type-specific credit is never skipped in favour of a universal one.

    Returns:
        (plan keyed by requested type, shortfall keyed by requested type)
    """
    remaining = {t: list(pools.get(t, [])) for t in CreditType}
    need = dict(wanted)
    plan: Dict[CreditType, List[int]] = {t: [] for t in wanted}

    depth = max(len(order) for order in FALLBACK_ORDER.values())
    for step in range(depth):
        for requested in CreditType:
            if need.get(requested, 0) <= 0:
                continue
            order = FALLBACK_ORDER[requested]
            if step >= len(order):
                continue
            pool = remaining[order[step]]
            take = min(need[requested], len(pool))
            plan[requested].extend(pool[:take])
            del pool[:take]
            need[requested] -= take

    shortfall = {t: n for t, n in need.items() if n > 0}
    return plan, shortfall


class ConsumptionService:
    """All-or-nothing credit debits, safe under concurrent callers."""

    def __init__(
        self,
        session_factory: sessionmaker,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._logger = logger or get_logger()
        self._clock = clock

    def use_credits(self, user_id: str, action_id: str, requested: Mapping[Any, int]) -> UseResult:
        """
        Debit credits for one action.

        Args:
            user_id: Credit owner
            action_id: Identifier stamped on every consumed credit
            requested: Credit type (enum or value) -> count

        Returns:
            UseResult; success=False carries the exact shortfall and means
            nothing was debited

        Raises:
            ValidationError: On a malformed request
            ClaimConflict: If concurrent callers kept winning the claim
        """
        errors = validate_requested(requested)
        if not isinstance(action_id, str) or not action_id.strip():
            errors.append("Field 'action_id' must be a non-empty string")
        if errors:
            raise ValidationError(errors)
        wanted = {parse_credit_type(k): v for k, v in requested.items()}

        for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
            try:
                result = self._attempt(user_id, action_id, wanted)
            except ClaimConflict:
                self._logger.warning(
                    "Credit claim conflict, retrying",
                    user_id=user_id,
                    action_id=action_id,
                    attempt=attempt,
                )
                self._logger.record_error("ClaimConflict")
                continue

            consumed = len(result.consumed_ids)
            self._logger.record_consumption(result.success, consumed)
            if result.success:
                self._logger.info(
                    "Credits used",
                    user_id=user_id,
                    action_id=action_id,
                    consumed=result.consumed_by_type,
                )
            else:
                self._logger.warning(
                    "Insufficient credits",
                    user_id=user_id,
                    action_id=action_id,
                    shortfall=result.shortfall,
                )
            return result

        raise ClaimConflict(
            f"Could not claim credits for user {user_id} after {MAX_CLAIM_ATTEMPTS} attempts"
        )

    def use_credits_or_raise(self, user_id: str, action_id: str, requested: Mapping[Any, int]) -> UseResult:
        """Like use_credits, but raises InsufficientCredits instead of returning a failure."""
        result = self.use_credits(user_id, action_id, requested)
        if not result.success:
            raise InsufficientCredits(result.shortfall, user_id=user_id)
        return result

    def _attempt(self, user_id: str, action_id: str, wanted: Dict[CreditType, int]) -> UseResult:
        session = self._session_factory()
        try:
            now = self._clock()
            eligible = sorted({t for requested in wanted for t in FALLBACK_ORDER[requested]}, key=lambda t: t.value)
            candidates = (
                session.query(Credit.id, Credit.type)
                .filter(
                    Credit.user_id == user_id,
                    Credit.type.in_(eligible),
                    Credit.used.is_(False),
                    Credit.expires_at > now,
                )
                .order_by(Credit.expires_at.asc(), Credit.id.asc())
                .with_for_update()
                .all()
            )
            pools: Dict[CreditType, List[int]] = {}
            for credit_id, credit_type in candidates:
                pools.setdefault(credit_type, []).append(credit_id)

            plan, shortfall = plan_consumption(wanted, pools)
            if shortfall:
                balance = balance_dict(count_usable(session, user_id, now))
                session.rollback()
                return UseResult(
                    success=False,
                    remaining_balance=balance,
                    shortfall={t.value: n for t, n in shortfall.items()},
                )

            ids = [credit_id for chosen in plan.values() for credit_id in chosen]
            claimed = (
                session.query(Credit)
                .filter(Credit.id.in_(ids), Credit.used.is_(False), Credit.expires_at > now)
                .update(
                    {Credit.used: True, Credit.used_at: now, Credit.used_for: action_id},
                    synchronize_session=False,
                )
            )
            if claimed != len(ids):
                session.rollback()
                raise ClaimConflict(f"claimed {claimed} of {len(ids)} credits")

            balance = balance_dict(count_usable(session, user_id, now))
            session.commit()

            chosen_ids = set(ids)
            by_type: Dict[str, int] = {}
            for credit_id, credit_type in candidates:
                if credit_id in chosen_ids:
                    by_type[credit_type.value] = by_type.get(credit_type.value, 0) + 1
            return UseResult(
                success=True,
                remaining_balance=balance,
                consumed_ids=ids,
                consumed_by_type=by_type,
            )
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
