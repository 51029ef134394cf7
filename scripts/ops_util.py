"""
Operations utilities - CLI tools for the manual-review queue and one-off ticks.
"""

import argparse
import json
import sys
from pathlib import Path

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pay2ping.core.dao import StakeStore
from pay2ping.core.errors import InvalidTransitionError, RecordNotFoundError, StoreError
from pay2ping.core.reconciler import Reconciler
from util.logging import audit_event, logger, mask_contact


def _print_record(record):
    print(f"  {record.escrow_id}  {record.status.value:<28} end={record.meeting_end_time}  "
          f"attempts={record.attempts}  contact={mask_contact(record.attendee_contact)}")
    if record.last_error:
        print(f"      last_error: {record.last_error}")


def review_command(args):
    """List records parked for manual review."""
    records = StakeStore().needs_review()
    if not records:
        print("✅ Review queue is empty")
        return

    print(f"⚠️  {len(records)} records need review:")
    for record in records:
        _print_record(record)


def show_command(args):
    """Show one record and its transition history."""
    store = StakeStore()
    record = store.get(args.escrow_id)
    if record is None:
        print(f"❌ No stake record {args.escrow_id}")
        sys.exit(1)

    _print_record(record)
    if record.last_confirmation_ref:
        print(f"      confirmation: {record.last_confirmation_ref}")
    print("  history:")
    for event in store.history(args.escrow_id):
        ref = f" ref={event.confirmation_ref}" if event.confirmation_ref else ""
        print(f"    {event.ts}  {event.from_status or '-'} -> {event.to_status}{ref}  {event.detail or ''}")


def requeue_command(args):
    """Send a reviewed record back to the reconciler."""
    try:
        record = StakeStore().requeue(args.escrow_id)
    except (RecordNotFoundError, InvalidTransitionError) as e:
        print(f"❌ {e}")
        sys.exit(1)

    audit_event("stake.requeued", {"escrow_id": args.escrow_id, "source": "cli"})
    print(f"✅ {record.escrow_id} requeued ({record.status.value})")


def resolve_command(args):
    """Close an ambiguous release with the ledger's confirmation reference."""
    try:
        record = StakeStore().resolve(args.escrow_id, args.status, args.confirmation_ref)
    except (RecordNotFoundError, InvalidTransitionError, ValueError) as e:
        print(f"❌ {e}")
        sys.exit(1)

    audit_event("stake.resolved", {"escrow_id": args.escrow_id, "source": "cli"},
                payload={"status": args.status, "confirmation_ref": args.confirmation_ref})
    print(f"✅ {record.escrow_id} resolved as {record.status.value}")


def correct_command(args):
    """Fix recipient, vault or amount data on a parked record."""
    fields = {name: getattr(args, name) for name in ("initializer_id", "beneficiary_id", "vault_id", "stake_amount")
              if getattr(args, name) is not None}
    try:
        record = StakeStore().correct_record(args.escrow_id, **fields)
    except (RecordNotFoundError, InvalidTransitionError, ValueError) as e:
        print(f"❌ {e}")
        sys.exit(1)

    audit_event("stake.corrected", {"escrow_id": args.escrow_id, "source": "cli"}, payload=fields)
    print(f"✅ {record.escrow_id} corrected: {', '.join(sorted(fields))}")


def run_once_command(args):
    """Run a single reconciliation tick and print its report."""
    try:
        report = Reconciler.from_config().run_tick()
    except StoreError as e:
        print(f"❌ Tick aborted: {e}")
        logger.error(f"CLI tick failed: {e}")
        sys.exit(1)

    print(json.dumps(report.to_dict(), indent=2))


def main(argv=None):
    """Main CLI entry point for operations utilities."""
    parser = argparse.ArgumentParser(
        description="pay2ping Operations CLI Utilities",
        prog="python scripts/ops_util.py"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    review_parser = subparsers.add_parser("review", help="List records needing manual review")
    review_parser.set_defaults(func=review_command)

    show_parser = subparsers.add_parser("show", help="Show a record and its history")
    show_parser.add_argument("escrow_id")
    show_parser.set_defaults(func=show_command)

    requeue_parser = subparsers.add_parser("requeue", help="Return a reviewed record to the reconciler")
    requeue_parser.add_argument("escrow_id")
    requeue_parser.set_defaults(func=requeue_command)

    resolve_parser = subparsers.add_parser("resolve", help="Close an ambiguous release")
    resolve_parser.add_argument("escrow_id")
    resolve_parser.add_argument("status", choices=["refunded", "claimed"])
    resolve_parser.add_argument("confirmation_ref", help="Transaction reference from the ledger")
    resolve_parser.set_defaults(func=resolve_command)

    correct_parser = subparsers.add_parser("correct", help="Fix release data on a parked record")
    correct_parser.add_argument("escrow_id")
    correct_parser.add_argument("--initializer-id", dest="initializer_id")
    correct_parser.add_argument("--beneficiary-id", dest="beneficiary_id")
    correct_parser.add_argument("--vault-id", dest="vault_id")
    correct_parser.add_argument("--stake-amount", dest="stake_amount", type=int)
    correct_parser.set_defaults(func=correct_command)

    run_parser = subparsers.add_parser("run-once", help="Run one reconciliation tick")
    run_parser.set_defaults(func=run_once_command)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Run the selected command
    args.func(args)


if __name__ == "__main__":
    main()
