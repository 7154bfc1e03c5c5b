"""
Reconciliation sweep.

Periodic repair pass for purchases whose provider notification never
arrived (stale pending purchases are checked against the provider) and for
completed purchases whose minting was interrupted. Every fix goes through
the same compare-and-set and mint guards as the event path, so the sweep is
safe to run concurrently with event handling and with itself.

Usage:
    sweep = ReconciliationSweep(purchases, minter, provider)
    summary = sweep.run(threshold_minutes=60)
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .database import Purchase, utcnow
from .errors import InvalidStatusTransition
from .logger import StructuredLogger, get_logger
from .minter import CreditMinter
from .provider import PaymentProviderClient, ProviderError
from .purchases import PurchaseRecordManager
from .retry import CircuitBreaker, CircuitOpenError

DEFAULT_THRESHOLD_MINUTES = 60
MAX_FIXES_PER_RUN = 100


class ReconciliationSweep:
    """Completes, fails or re-mints purchases the event path left behind."""

    def __init__(
        self,
        purchases: PurchaseRecordManager,
        minter: CreditMinter,
        provider: Optional[PaymentProviderClient] = None,
        logger: Optional[StructuredLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self._purchases = purchases
        self._minter = minter
        self._provider = provider
        self._logger = logger or get_logger()
        self._clock = clock
        self._breaker = breaker or CircuitBreaker(
            failure_threshold=5, recovery_timeout=60, expected_exception=ProviderError
        )

    def run(
        self,
        threshold_minutes: Optional[int] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Run one sweep.

        Args:
            threshold_minutes: Pending purchases older than this are checked
            dry_run: Detect and report, but write nothing
            limit: Maximum purchases examined per check

        Returns:
            Summary of what was (or would be) fixed
        """
        threshold = DEFAULT_THRESHOLD_MINUTES if threshold_minutes is None else threshold_minutes
        limit = MAX_FIXES_PER_RUN if limit is None else limit
        start = self._clock()
        cutoff = start - timedelta(minutes=threshold)

        results: Dict[str, Any] = {
            "run_at": start.isoformat(),
            "dry_run": dry_run,
            "threshold_minutes": threshold,
            "completed": [],
            "failed": [],
            "reminted": [],
            "still_pending": [],
            "errors": [],
        }
        self._logger.info("Starting reconciliation sweep", cutoff=cutoff.isoformat(), dry_run=dry_run)

        stale = self._purchases.list_stale_pending(cutoff, limit)
        skip_reason = None if self._provider is not None else "no_provider"
        if stale and skip_reason:
            self._logger.warning("No payment provider configured; stale purchases left pending", count=len(stale))

        for purchase in stale:
            if skip_reason:
                results["still_pending"].append({"purchase_id": purchase.id, "reason": skip_reason})
                continue
            try:
                self._resolve_pending(purchase, dry_run, results)
            except CircuitOpenError as e:
                self._logger.error("Provider circuit open; skipping remaining lookups", error=str(e))
                results["errors"].append({"purchase_id": purchase.id, "check": "provider", "error": str(e)})
                results["still_pending"].append({"purchase_id": purchase.id, "reason": "circuit_open"})
                skip_reason = "circuit_open"
            except ProviderError as e:
                self._logger.warning("Provider lookup failed", purchase_id=purchase.id, error=str(e))
                self._logger.record_error("ProviderError")
                results["errors"].append({"purchase_id": purchase.id, "check": "provider", "error": str(e)})
            except InvalidStatusTransition as e:
                results["errors"].append({"purchase_id": purchase.id, "check": "transition", "error": str(e)})

        for purchase in self._purchases.list_completed_unminted(limit):
            if dry_run:
                results["reminted"].append({"purchase_id": purchase.id, "action": "would_mint"})
                continue
            result = self._minter.mint(purchase.id)
            if result.created:
                results["reminted"].append({"purchase_id": purchase.id, "credits": result.created})

        total_fixes = len(results["completed"]) + len(results["failed"]) + len(results["reminted"])
        results["total_fixes"] = total_fixes
        results["total_errors"] = len(results["errors"])
        results["duration_ms"] = int((self._clock() - start).total_seconds() * 1000)
        if not dry_run:
            self._logger.record_sweep_repair(total_fixes)

        self._logger.info(
            "Reconciliation sweep complete",
            completed=len(results["completed"]),
            failed=len(results["failed"]),
            reminted=len(results["reminted"]),
            still_pending=len(results["still_pending"]),
            errors=len(results["errors"]),
        )
        return results

    def _resolve_pending(self, purchase: Purchase, dry_run: bool, results: Dict[str, Any]) -> None:
        remote = self._breaker.call(self._provider.get_checkout_session, purchase.external_session_id)

        if remote.is_paid:
            if dry_run:
                results["completed"].append({"purchase_id": purchase.id, "action": "would_complete"})
                return
            self._purchases.mark_completed(purchase.id, remote.payment_ref)
            # Mint even if another path completed it first; the marker makes this a no-op then
            minted = self._minter.mint(purchase.id)
            self._logger.info(
                "Sweep completed stale purchase",
                purchase_id=purchase.id,
                credits=minted.created,
            )
            results["completed"].append({"purchase_id": purchase.id, "credits": minted.created})
        elif remote.is_expired:
            if dry_run:
                results["failed"].append({"purchase_id": purchase.id, "action": "would_fail"})
                return
            self._purchases.mark_failed(purchase.id, reason="checkout.session.expired")
            results["failed"].append({"purchase_id": purchase.id})
        else:
            results["still_pending"].append({
                "purchase_id": purchase.id,
                "reason": f"{remote.status}/{remote.payment_status}",
            })
