"""
Bravo CLI - operator commands for the marketplace engine.

Usage:
    bravo status [--json]
    bravo sync [--json]
    bravo sync requeue [--id ID]...
    bravo wallet EMAIL
    bravo job JOB_ID [--json] [--settle]
    bravo revenue
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict

from bravo import Marketplace
from bravo.config import get_settings
from bravo.errors import BravoError
from bravo.logging_config import setup_bravo_logging
from bravo.storage.base import StoreError
from bravo.wallet.service import WalletNotFoundError

logger = logging.getLogger(__name__)


def _sync_capable(m: Marketplace) -> bool:
    return hasattr(m.storage, "get_sync_status")


def cmd_status(args, m: Marketplace):
    """Show sync queue status."""
    if not _sync_capable(m):
        print("Store has no sync queue")
        return
    status = m.storage.get_sync_status()
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    print("Bravo Sync Status")
    print("=" * 40)
    print(f"Cloud:        {'configured' if status['cloud_configured'] else 'local-only'}")
    if status["cloud_configured"]:
        print(f"Online:       {'yes' if m.storage.is_online() else 'no'}")
    print(f"Pending:      {status['pending']}")
    print(f"Dead letter:  {status['dead_letter']}")
    print(f"Synced:       {status['synced']}")
    print(f"Last sync:    {status['last_sync_time'] or 'never'}")
    for table, count in sorted(status["by_table"].items()):
        print(f"  {table}: {count} pending")


def cmd_sync(args, m: Marketplace):
    """Run a sync, or requeue dead-lettered changes."""
    if args.sync_action == "requeue":
        if not _sync_capable(m):
            print("Store has no sync queue")
            return
        count = m.storage.requeue_dead_letters(args.id or None)
        print(f"✓ Requeued {count} change(s)")
        return

    result = m.sync()
    if args.json:
        print(json.dumps(asdict(result), indent=2, default=str))
        if not result.success:
            sys.exit(1)
        return

    print(f"Pushed:    {result.pushed}")
    print(f"Pulled:    {result.pulled}")
    print(f"Conflicts: {result.conflict_count}")
    if result.errors:
        print(f"✗ {len(result.errors)} error(s):")
        for error in result.errors[:10]:
            print(f"  {error}")
        sys.exit(1)
    print("✓ Sync complete")


def cmd_wallet(args, m: Marketplace):
    """Show a user's wallet balance."""
    try:
        balance = m.wallet.get_balance(args.email)
    except WalletNotFoundError:
        print(f"✗ No user with email {args.email}")
        sys.exit(1)
    user = m.wallet.get_user(args.email)
    print(f"{user.name} <{user.email}> ({user.role})")
    print(f"Balance:  {balance:.2f}")
    print(f"Releases: {len(user.released_job_ids)}")


def cmd_job(args, m: Marketplace):
    """Show a job, optionally re-applying its settlement."""
    job = m.jobs.settle_job(args.job_id) if args.settle else m.jobs.get_job(args.job_id)
    if job is None:
        print(f"✗ Job {args.job_id} not found")
        sys.exit(1)

    if args.json:
        print(json.dumps(job.to_record(), indent=2, default=str))
        return

    print(f"Job {job.id}")
    print("-" * 40)
    print(f"  {job.client_name} -> {job.professional_name}")
    print(f"  Price:      {job.price:.2f}")
    print(f"  Status:     {job.status}")
    print(f"  Escrow:     {job.escrow_status}")
    print(f"  Commission: {job.commission_amount:.2f}")
    print(f"  Confirmed:  client={job.client_completed} pro={job.pro_completed}")
    if job.request_id:
        print(f"  Request:    {job.request_id}")
    if job.completed_at:
        print(f"  Completed:  {job.completed_at[:19]}")


def cmd_revenue(args, m: Marketplace):
    """Show total platform commission."""
    print(f"Platform revenue: {m.jobs.get_platform_revenue():.2f}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="bravo",
        description="Operator commands for the Bravo marketplace engine",
    )
    parser.add_argument("--log-level", default=None, help="Override BRAVO_LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show sync queue status")
    p_status.add_argument("--json", "-j", action="store_true")

    # sync
    p_sync = subparsers.add_parser("sync", help="Sync with the remote store")
    p_sync.add_argument("--json", "-j", action="store_true")
    sync_sub = p_sync.add_subparsers(dest="sync_action")
    p_requeue = sync_sub.add_parser("requeue", help="Retry dead-lettered changes")
    p_requeue.add_argument("--id", type=int, action="append", help="Queue entry ID (repeatable)")

    # wallet
    p_wallet = subparsers.add_parser("wallet", help="Show a wallet balance")
    p_wallet.add_argument("email", help="User email")

    # job
    p_job = subparsers.add_parser("job", help="Show a job")
    p_job.add_argument("job_id", help="Job ID")
    p_job.add_argument("--json", "-j", action="store_true")
    p_job.add_argument("--settle", action="store_true",
                       help="Re-apply wallet credit and request completion")

    # revenue
    subparsers.add_parser("revenue", help="Show total platform commission")

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_bravo_logging(args.log_level or settings.log_level, settings.resolve_data_dir() / "logs")

    try:
        m = Marketplace.from_settings(settings)
    except (ValueError, StoreError) as e:
        logger.error(f"Failed to initialize Bravo: {e}")
        print(f"✗ {e}")
        sys.exit(1)

    try:
        if args.command == "status":
            cmd_status(args, m)
        elif args.command == "sync":
            cmd_sync(args, m)
        elif args.command == "wallet":
            cmd_wallet(args, m)
        elif args.command == "job":
            cmd_job(args, m)
        elif args.command == "revenue":
            cmd_revenue(args, m)
    except StoreError as e:
        logger.error(f"Store error: {e}")
        print(f"✗ Store error (retry later): {e}")
        sys.exit(1)
    except BravoError as e:
        logger.error(f"Command failed: {e}")
        print(f"✗ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
