#!/usr/bin/env python
"""
Billing sweeps - overdue cycles and license expiry

Usage:
    python scripts/billing_sweeps.py --all [--dry-run]
    python scripts/billing_sweeps.py --overdue
    python scripts/billing_sweeps.py --expire

Schedule:
    Run daily via cron/scheduler:
    15 0 * * * cd /app && python scripts/billing_sweeps.py --all >> /var/log/billing_sweeps.log 2>&1
"""
import sys
import logging
import argparse
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from license_billing.exceptions import BillingError
from license_billing.services.scheduled_jobs import run_expiry_sweep, run_overdue_sweep

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="License billing sweeps")
    parser.add_argument("--overdue", action="store_true", help="Mark open cycles past their due date OVERDUE")
    parser.add_argument("--expire", action="store_true", help="Expire licenses whose period has ended")
    parser.add_argument("--all", action="store_true", help="Run every sweep")
    parser.add_argument("--dry-run", action="store_true", help="Report candidates without writing")
    args = parser.parse_args(argv)
    if not (args.overdue or args.expire or args.all):
        parser.error("choose at least one of --overdue, --expire, --all")
    return args


def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    logger.info("=" * 60)
    logger.info(f"BILLING SWEEPS ({'DRY RUN' if args.dry_run else 'LIVE'})")
    logger.info("=" * 60)

    results = []
    try:
        if args.overdue or args.all:
            results.append(run_overdue_sweep(dry_run=args.dry_run))
        if args.expire or args.all:
            results.append(run_expiry_sweep(dry_run=args.dry_run))
    except BillingError as e:
        logger.error(f"Sweep aborted: {e.code}: {e.message}")
        return 1

    logger.info("=" * 60)
    logger.info("SWEEP SUMMARY")
    logger.info("=" * 60)
    for stats in results:
        changed = stats.get("marked", stats.get("expired", 0))
        logger.info(f"{stats['job']}: {stats['candidates']} candidates, {changed} updated")
    logger.info("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
