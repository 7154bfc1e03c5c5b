import argparse
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from . import __version__
from .admin import grant_credits
from .config import Settings
from .consumption import ConsumptionService
from .database import get_session_factory, init_database
from .env import load_env
from .errors import LedgerError, ValidationError
from .ledger import BalanceCalculator
from .logger import get_logger, reset_logger
from .minter import CreditMinter
from .provider import PaymentProviderClient
from .purchases import PurchaseRecordManager
from .reconciler import EventReconciler
from .sweep import ReconciliationSweep


@dataclass
class Services:
    """Ledger components wired to one database."""

    session_factory: sessionmaker
    purchases: PurchaseRecordManager
    minter: CreditMinter
    reconciler: EventReconciler
    ledger: BalanceCalculator
    consumption: ConsumptionService


def configure_logging(settings: Settings) -> None:
    """Rebuild the global logger from settings, once .env has been loaded."""
    reset_logger()
    get_logger(level=settings.log_level, log_dir=settings.log_dir)


def build_services(target) -> Services:
    """Initialize the database at `target` (path or URL) and wire the services."""
    engine = init_database(target)
    factory = get_session_factory(engine)
    logger = get_logger()
    purchases = PurchaseRecordManager(factory, logger=logger)
    minter = CreditMinter(factory, logger=logger)
    return Services(
        session_factory=factory,
        purchases=purchases,
        minter=minter,
        reconciler=EventReconciler(purchases, minter, logger=logger),
        ledger=BalanceCalculator(factory),
        consumption=ConsumptionService(factory, logger=logger),
    )


def parse_counts(items: List[str]) -> Dict[str, int]:
    """Parse ["job_post=2", "universal"] into {"job_post": 2, "universal": 1}."""
    counts: Dict[str, int] = {}
    for item in items or []:
        key, _, raw = item.partition("=")
        key = key.strip()
        if not key:
            raise SystemExit(f"Invalid credit argument: {item!r} (expected type=count)")
        try:
            count = int(raw) if raw else 1
        except ValueError:
            raise SystemExit(f"Invalid count in {item!r}")
        counts[key] = counts.get(key, 0) + count
    return counts


def _db_target(args: argparse.Namespace, settings: Settings):
    if args.db:
        return Path(args.db)
    return settings.db_target


def _services(args: argparse.Namespace) -> Services:
    return build_services(_db_target(args, args.settings))


def _print_balance(balance: Dict[str, int]) -> None:
    for key, value in balance.items():
        print(f"  {key}: {value}")


def cmd_init_db(args: argparse.Namespace) -> None:
    target = _db_target(args, args.settings)
    init_database(target)
    print(f"Database ready: {target}")


def cmd_checkout(args: argparse.Namespace) -> None:
    services = _services(args)
    purchase = services.purchases.create_checkout(
        user_id=args.user,
        external_session_id=args.session,
        tier=args.tier,
        credit_pack=args.credit_pack,
        subscription=args.subscription,
        addons=args.addon or [],
    )
    print(f"Purchase: {purchase.id}")
    print(f"Status: {purchase.status.value}")
    print(f"Credits: {purchase.total_entitlement}")
    print(f"Amount: {purchase.amount_cents / 100:.2f}")


def cmd_handle_event(args: argparse.Namespace) -> None:
    input_path = Path(args.input)
    if not input_path.exists():
        raise SystemExit(f"Input file not found: {input_path}")
    with input_path.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    events = payload if isinstance(payload, list) else [payload]

    services = _services(args)
    for event in events:
        outcome = services.reconciler.handle_event(event)
        print(f"[{outcome.status}] session={event.get('external_session_id')} "
              f"purchase={outcome.purchase_id} minted={outcome.credits_minted}")


def cmd_balance(args: argparse.Namespace) -> None:
    balance = _services(args).ledger.get_balance(args.user)
    if args.json:
        print(json.dumps(balance, indent=2))
        return
    print(f"Balance for {args.user}:")
    _print_balance(balance)


def cmd_expiring(args: argparse.Namespace) -> None:
    credits = _services(args).ledger.get_expiring_soon(args.user, within_days=args.days)
    if not credits:
        print(f"No credits expiring in the next {args.days} days.")
        return
    print(f"{len(credits)} credit(s) expiring in the next {args.days} days:")
    for credit in credits:
        print(f"  #{credit.id} {credit.type.value} expires {credit.expires_at.isoformat()}")


def cmd_history(args: argparse.Namespace) -> None:
    history = _services(args).ledger.get_purchase_history(args.user, limit=args.limit)
    if args.json:
        print(json.dumps([h.to_dict() for h in history], indent=2))
        return
    if not history:
        print("No purchases.")
        return
    for item in history:
        print(f"ID: {item.id}  {item.tier}  [{item.status}]")
        print(f"  Created: {item.created_at.isoformat()}  Expires: {item.expires_at.isoformat()}")
        print(f"  Credits: {item.credits_used}/{item.credits_total} used, {item.credits_expired} expired")
        print()


def cmd_use(args: argparse.Namespace) -> None:
    requested = parse_counts(args.credit)
    result = _services(args).consumption.use_credits(args.user, args.action, requested)
    if not result.success:
        print(f"Denied: {result.message}")
        raise SystemExit(2)
    print(f"OK: {result.message} for {args.action}")
    _print_balance(result.remaining_balance)


def cmd_grant(args: argparse.Namespace) -> None:
    services = _services(args)
    result = grant_credits(
        services.purchases,
        services.minter,
        user_id=args.user,
        counts=parse_counts(args.credit),
        note=args.note or "",
        expires_days=args.expires_days,
        granted_by=args.by,
    )
    print(f"Granted {result.created} credit(s) to {args.user} (purchase {result.purchase_id})")


def cmd_sweep(args: argparse.Namespace) -> None:
    settings: Settings = args.settings
    services = _services(args)
    provider = None
    if settings.provider_api_key:
        provider = PaymentProviderClient(settings.provider_api_key, api_base=settings.provider_api_base)
    sweep = ReconciliationSweep(services.purchases, services.minter, provider)
    summary = sweep.run(
        threshold_minutes=args.threshold if args.threshold is not None else settings.sweep_threshold_minutes,
        dry_run=args.dry_run,
        limit=args.limit if args.limit is not None else settings.sweep_limit,
    )
    print(json.dumps(summary, indent=2, default=str))
    get_logger().log_metrics_summary()


def cmd_stats(args: argparse.Namespace) -> None:
    stats = _services(args).ledger.get_credit_stats()
    print(json.dumps(stats, indent=2))


def main(argv: Optional[List[str]] = None):
    load_env()
    settings = Settings.from_env()
    configure_logging(settings)
    parser = argparse.ArgumentParser(prog="jobcredits", description="Job posting credit ledger")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--db", help=f"SQLite database path (default: {settings.db_path} or JOBCREDITS_DATABASE_URL)")

    subparsers = parser.add_subparsers(dest="command")

    init = subparsers.add_parser("init-db", help="Create the ledger tables")
    init.set_defaults(func=cmd_init_db)

    chk = subparsers.add_parser("checkout", help="Record a pending purchase for a checkout session")
    chk.add_argument("--user", required=True, help="Buyer user id")
    chk.add_argument("--session", required=True, help="Provider checkout session id")
    chk.add_argument("--tier", help="One-time tier: starter, standard, pro")
    chk.add_argument("--credit-pack", help="Credit pack: singleCredit, fiveCredits")
    chk.add_argument("--subscription", help="Subscription tier: basic, essential, professional, enterprise, premium")
    chk.add_argument("--addon", action="append", help="Add-on key (repeatable)")
    chk.set_defaults(func=cmd_checkout)

    evt = subparsers.add_parser("handle-event", help="Apply provider notification(s) from a JSON file")
    evt.add_argument("--input", required=True, help="JSON object or list of events")
    evt.set_defaults(func=cmd_handle_event)

    bal = subparsers.add_parser("balance", help="Show usable credits per type")
    bal.add_argument("--user", required=True)
    bal.add_argument("--json", action="store_true", help="Print JSON")
    bal.set_defaults(func=cmd_balance)

    exp = subparsers.add_parser("expiring", help="List credits expiring soon")
    exp.add_argument("--user", required=True)
    exp.add_argument("--days", type=int, default=7, help="Window in days (default 7)")
    exp.set_defaults(func=cmd_expiring)

    hist = subparsers.add_parser("history", help="Purchase history with credit usage")
    hist.add_argument("--user", required=True)
    hist.add_argument("--limit", type=int, default=20)
    hist.add_argument("--json", action="store_true", help="Print JSON")
    hist.set_defaults(func=cmd_history)

    use = subparsers.add_parser("use", help="Consume credits for an action")
    use.add_argument("--user", required=True)
    use.add_argument("--action", required=True, help="Action id, e.g. the job id being published")
    use.add_argument("--credit", action="append", required=True, help="type=count, e.g. job_post=1 (repeatable)")
    use.set_defaults(func=cmd_use)

    grant = subparsers.add_parser("grant", help="Admin: grant credits to a user")
    grant.add_argument("--user", required=True)
    grant.add_argument("--credit", action="append", required=True, help="type=count (repeatable)")
    grant.add_argument("--note", help="Reason for the grant")
    grant.add_argument("--expires-days", type=int, default=30)
    grant.add_argument("--by", help="Admin performing the grant")
    grant.set_defaults(func=cmd_grant)

    swp = subparsers.add_parser("sweep", help="Repair purchases stuck pending or left unminted")
    swp.add_argument("--threshold", type=int, help="Minutes a purchase may stay pending (default from env)")
    swp.add_argument("--limit", type=int, help="Max purchases examined per check")
    swp.add_argument("--dry-run", action="store_true", help="Report without writing")
    swp.set_defaults(func=cmd_sweep)

    sts = subparsers.add_parser("stats", help="Admin: platform-wide credit totals")
    sts.set_defaults(func=cmd_stats)

    args = parser.parse_args(argv)
    args.settings = settings

    if args.version:
        print(__version__)
        return

    if hasattr(args, "func"):
        try:
            args.func(args)
        except ValidationError as e:
            print("Invalid:")
            for err in e.errors:
                print(f" - {err}")
            raise SystemExit(2)
        except LedgerError as e:
            raise SystemExit(f"Error: {e}")
        return

    parser.print_help()


if __name__ == "__main__":
    main()
