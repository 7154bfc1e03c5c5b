#!/usr/bin/env python3
"""
Replay provider notifications from a file through the event reconciler.

Accepts a JSON list, a JSON object with an "events" list, or JSON Lines.
Replaying the same file again changes nothing: already-terminal purchases
come back as duplicates and no credits are minted twice.

Usage:
    python scripts/replay_events.py --events exports/events.jsonl --db data/credits.db
"""

import argparse
import json
from collections import Counter
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from jobcredits.app import build_services, configure_logging
from jobcredits.config import Settings
from jobcredits.env import load_env
from jobcredits.schema import validate_event_strict


def load_events(path: Path):
    """Read events from a JSON list, {"events": [...]} or JSON Lines file."""
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    if isinstance(data, dict):
        data = data.get("events", [data])
    return list(data)


def replay(events_path: Path, db_target, dry_run: bool = False) -> Counter:
    """
    Feed every event to the reconciler.

    Args:
        events_path: File with provider events
        db_target: SQLite path or database URL
        dry_run: Only validate events, do not touch the database

    Returns:
        Counter of outcome status -> number of events
    """
    print(f"Loading events from {events_path}...")
    events = load_events(events_path)
    print(f"Found {len(events)} events")

    counts: Counter = Counter()
    if dry_run:
        print("\n[DRY RUN] Validating only")
        for i, event in enumerate(events, 1):
            ok, errors = validate_event_strict(event)
            counts["valid" if ok else "invalid"] += 1
            if not ok:
                print(f"  {i}. {event.get('external_session_id')}: {'; '.join(errors)}")
        return counts

    services = build_services(db_target)
    for i, event in enumerate(events, 1):
        outcome = services.reconciler.handle_event(event)
        counts[outcome.status] += 1
        if outcome.credits_minted:
            print(f"  {event['external_session_id']}: minted {outcome.credits_minted} credit(s)")
        if i % 50 == 0:
            print(f"  Replayed {i} events...")

    print("\n✅ Replay complete!")
    for status, n in sorted(counts.items()):
        print(f"   {status}: {n}")
    return counts


def main():
    parser = argparse.ArgumentParser(description="Replay provider events into the credit ledger")
    parser.add_argument("--events", type=Path, required=True,
                        help="JSON / JSON Lines file of provider events")
    parser.add_argument("--db", type=Path, default=Path("data/credits.db"),
                        help="Path to SQLite database file")
    parser.add_argument("--dry-run", action="store_true",
                        help="Validate events without applying them")

    args = parser.parse_args()
    load_env()
    configure_logging(Settings.from_env())

    if not args.events.exists():
        print(f"❌ Events file not found: {args.events}")
        sys.exit(1)

    counts = replay(args.events, args.db, dry_run=args.dry_run)
    sys.exit(1 if counts.get("invalid") else 0)


if __name__ == "__main__":
    main()
