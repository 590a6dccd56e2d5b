"""
Scheduled Jobs
Periodic billing sweeps, triggered externally (cron, k8s CronJob) through
scripts/billing_sweeps.py. Each job opens its own session.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..db.engine import SessionLocal
from ..db.models.billing_cycle import BillingCycle, BillingStatus
from ..db.models.license import License, LicenseStatus
from ..timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


def run_overdue_sweep(
    dry_run: bool = False,
    now: Optional[datetime] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Dict[str, Any]:
    """
    Move open billing cycles past their due date to OVERDUE

    Returns:
        Dictionary with candidates / marked counts
    """
    from .billing_cycle_service import BillingCycleService

    now = as_utc(now) or utcnow()
    stats = {"job": "overdue", "dry_run": dry_run, "run_at": now.isoformat(), "candidates": 0, "marked": 0}

    logger.info(f"Starting overdue sweep ({'DRY RUN' if dry_run else 'LIVE'})")
    db = session_factory()
    try:
        candidates = (
            db.query(BillingCycle)
            .filter(
                BillingCycle.billing_status.in_([BillingStatus.PENDING.value, BillingStatus.PROCESSING.value]),
                BillingCycle.payment_due_date < now,
            )
            .count()
        )
        stats["candidates"] = candidates

        if dry_run:
            logger.info(f"[DRY RUN] Would mark {candidates} billing cycles OVERDUE")
        else:
            stats["marked"] = BillingCycleService(db).mark_overdue_cycles(now)
    finally:
        db.close()

    logger.info(f"Overdue sweep finished: {stats['marked']} of {stats['candidates']} marked")
    return stats


def run_expiry_sweep(
    dry_run: bool = False,
    now: Optional[datetime] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Dict[str, Any]:
    """Expire ACTIVE/SUSPENDED licenses whose period has ended"""
    from .license_service import LicenseService

    now = as_utc(now) or utcnow()
    stats = {"job": "expire", "dry_run": dry_run, "run_at": now.isoformat(), "candidates": 0, "expired": 0}

    logger.info(f"Starting license expiry sweep ({'DRY RUN' if dry_run else 'LIVE'})")
    db = session_factory()
    try:
        candidates = (
            db.query(License)
            .filter(
                License.status.in_([LicenseStatus.ACTIVE.value, LicenseStatus.SUSPENDED.value]),
                License.current_period_end < now,
            )
            .count()
        )
        stats["candidates"] = candidates

        if dry_run:
            logger.info(f"[DRY RUN] Would expire {candidates} licenses")
        else:
            stats["expired"] = LicenseService(db).expire_overdue_licenses(now)
    finally:
        db.close()

    logger.info(f"Expiry sweep finished: {stats['expired']} of {stats['candidates']} expired")
    return stats


def run_all_sweeps(
    dry_run: bool = False,
    now: Optional[datetime] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> Dict[str, Dict[str, Any]]:
    now = as_utc(now) or utcnow()
    return {
        "overdue": run_overdue_sweep(dry_run, now, session_factory),
        "expire": run_expiry_sweep(dry_run, now, session_factory),
    }
