"""
License lifecycle service

Handles license creation and partial updates, the seat ledger behind
total_seats_purchased, renewal of the period window, status actions and
the expiry sweep.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import config
from ..db.models.billing_cycle import BillingCycle
from ..db.models.license import License, LicenseSeat, LicenseStatus, BILLING_CYCLE_MONTHS
from ..exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    MissingFieldError,
    NotFoundError,
    PersistenceError,
)
from ..timeutils import add_months, as_utc, utcnow
from .currency_math import normalize_currency_code, round_currency, to_decimal
from .identifiers import generate_guid
from .state_machine import StatusMachine, apply_transition, commit_or_raise
from .tax_calculator import normalize_country_code

logger = logging.getLogger(__name__)


LICENSE_MACHINE = StatusMachine(
    "license",
    LicenseStatus,
    {
        LicenseStatus.ACTIVE: {LicenseStatus.SUSPENDED, LicenseStatus.TERMINATED, LicenseStatus.EXPIRED},
        LicenseStatus.SUSPENDED: {LicenseStatus.ACTIVE, LicenseStatus.TERMINATED, LicenseStatus.EXPIRED},
        LicenseStatus.EXPIRED: {LicenseStatus.ACTIVE, LicenseStatus.TERMINATED},
        LicenseStatus.TERMINATED: set(),
    },
)

REQUIRED_FIELDS = (
    "tenant_id",
    "license_type",
    "billing_cycle_months",
    "current_period_start",
    "current_period_end",
)

UPDATABLE_FIELDS = (
    "tenant_id",
    "license_type",
    "billing_cycle_months",
    "base_price_usd",
    "minimum_seats",
    "billing_currency_code",
    "billing_country_code",
    "current_period_start",
    "current_period_end",
    "next_renewal_date",
    "status",
)

DEFAULT_BASE_PRICE_USD = Decimal("3.00")
DEFAULT_MINIMUM_SEATS = 5


def _positive_int(value: Any, field: str, minimum: int = 1) -> int:
    if isinstance(value, bool):
        raise InvalidValueError(f"{field} must be an integer", {"field": field})
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise InvalidValueError(f"{field} must be an integer (got {value!r})", {"field": field})
    if result != value and not (isinstance(value, str) and value.strip().isdigit()):
        raise InvalidValueError(f"{field} must be a whole number (got {value!r})", {"field": field})
    if result < minimum:
        raise InvalidValueError(f"{field} must be at least {minimum} (got {result})", {"field": field})
    return result


def validate_license(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a full license state and return it normalised

    Raises:
        MissingFieldError: a required field is absent
        InvalidValueError: a value is outside its domain
        InvariantViolationError: the period window is out of order
    """
    for field in REQUIRED_FIELDS:
        if values.get(field) in (None, ""):
            raise MissingFieldError(field, "license")

    result = dict(values)
    result["tenant_id"] = _positive_int(values["tenant_id"], "tenant_id")

    license_type = values["license_type"]
    if not isinstance(license_type, str) or not license_type.strip() or len(license_type.strip()) > 50:
        raise InvalidValueError("license_type must be a non-empty string of at most 50 characters",
                                {"field": "license_type"})
    result["license_type"] = license_type.strip()

    months = _positive_int(values["billing_cycle_months"], "billing_cycle_months")
    if months not in BILLING_CYCLE_MONTHS:
        raise InvalidValueError(
            f"billing_cycle_months must be one of {list(BILLING_CYCLE_MONTHS)} (got {months})",
            {"field": "billing_cycle_months"},
        )
    result["billing_cycle_months"] = months

    base_price = to_decimal(values.get("base_price_usd", DEFAULT_BASE_PRICE_USD), "base_price_usd")
    if base_price is None or base_price < 0:
        raise InvalidValueError("base_price_usd must be zero or positive", {"field": "base_price_usd"})
    result["base_price_usd"] = round_currency(base_price)

    result["minimum_seats"] = _positive_int(values.get("minimum_seats", DEFAULT_MINIMUM_SEATS), "minimum_seats")
    result["billing_currency_code"] = normalize_currency_code(values.get("billing_currency_code") or "USD")
    if values.get("billing_country_code"):
        result["billing_country_code"] = normalize_country_code(values["billing_country_code"])

    start = as_utc(values["current_period_start"])
    end = as_utc(values["current_period_end"])
    renewal = as_utc(values.get("next_renewal_date")) or end
    if end <= start:
        raise InvariantViolationError(
            f"current_period_end ({end.isoformat()}) must be after current_period_start ({start.isoformat()})"
        )
    if renewal < end:
        raise InvariantViolationError(
            f"next_renewal_date ({renewal.isoformat()}) must not be before current_period_end ({end.isoformat()})"
        )
    result.update(current_period_start=start, current_period_end=end, next_renewal_date=renewal)

    result["status"] = LICENSE_MACHINE.coerce(values.get("status") or LicenseStatus.ACTIVE)
    return result


class LicenseService:
    """Service for license lifecycle operations"""

    def __init__(self, db: Session):
        self.db = db

    # Lookups

    def get_license(self, license_id: int) -> Optional[License]:
        license = self.db.query(License).filter(License.id == license_id).first()
        return self.refresh_aggregates(license) if license else None

    def require_license(self, license_id: int) -> License:
        license = self.get_license(license_id)
        if not license:
            raise NotFoundError("License", license_id)
        return license

    def get_by_guid(self, guid: int) -> License:
        license = self.db.query(License).filter(License.guid == guid).first()
        if not license:
            raise NotFoundError("License", f"guid={guid}")
        return self.refresh_aggregates(license)

    def list_licenses(
        self,
        tenant_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[License]:
        query = self.db.query(License)
        if tenant_id is not None:
            query = query.filter(License.tenant_id == tenant_id)
        if status:
            query = query.filter(License.status == LICENSE_MACHINE.coerce(status))
        licenses = query.order_by(License.id.desc()).limit(limit).offset(offset).all()
        return [self.refresh_aggregates(license) for license in licenses]

    def get_expiring_soon(self, days: Optional[int] = None, now: Optional[datetime] = None) -> List[License]:
        """Active licenses whose period ends within ``days``"""
        days = config.EXPIRING_SOON_DAYS if days is None else days
        now = as_utc(now) or utcnow()
        licenses = (
            self.db.query(License)
            .filter(
                License.status == LicenseStatus.ACTIVE.value,
                License.current_period_end >= now,
                License.current_period_end <= now + timedelta(days=days),
            )
            .order_by(License.current_period_end)
            .all()
        )
        return [self.refresh_aggregates(license) for license in licenses]

    # Store-computed aggregates

    def refresh_aggregates(self, license: License) -> License:
        """
        Re-read total_seats_purchased and the latest billing status

        Advisory: a failure here is logged and the last snapshot is kept.
        """
        try:
            total_seats = (
                self.db.query(func.coalesce(func.sum(LicenseSeat.seat_count), 0))
                .filter(LicenseSeat.license_id == license.id)
                .scalar()
            )
            latest = (
                self.db.query(BillingCycle.billing_status)
                .filter(BillingCycle.license_id == license.id)
                .order_by(BillingCycle.period_start.desc(), BillingCycle.id.desc())
                .first()
            )
            license.load_aggregates(total_seats, latest[0] if latest else None)
        except SQLAlchemyError as e:
            logger.warning(f"Could not refresh aggregates for license {license.id}: {e}")
        return license

    def get_total_seats_purchased(self, license_id: int) -> int:
        return self.require_license(license_id).total_seats_purchased

    # Create / update

    def create_license(self, data: Dict[str, Any]) -> License:
        """
        Create a license

        Args:
            data: License fields; ``initial_seats`` (optional) seeds the seat ledger

        Returns:
            Persisted license with aggregates loaded
        """
        data = dict(data)
        initial_seats = data.pop("initial_seats", None)
        unknown = set(data) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidValueError(f"Unknown license fields: {', '.join(sorted(unknown))}")

        values = validate_license(data)
        if initial_seats is not None:
            initial_seats = _positive_int(initial_seats, "initial_seats", minimum=0)

        license = License(guid=generate_guid(self.db, License), **values)
        self.db.add(license)
        try:
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to insert license: {e}", exc_info=True)
            raise PersistenceError("Failed to create license") from e

        if initial_seats:
            self._append_seats(license, initial_seats, source="initial")

        commit_or_raise(self.db, license, "create license")
        self.refresh_aggregates(license)
        logger.info(
            f"Created license {license.id} (guid {license.guid}) for tenant {license.tenant_id}: "
            f"{license.license_type}, {license.billing_cycle_months}-month cycle"
        )
        return license

    def update_license(self, license_id: int, changes: Dict[str, Any]) -> License:
        """
        Partial update: only the supplied fields are written

        The merged state is re-validated as a whole before anything is
        persisted. Status is not editable here: a different status is
        rejected and has to go through renew, suspend, reactivate or terminate.
        """
        license = self.require_license(license_id)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidValueError(f"Unknown license fields: {', '.join(sorted(unknown))}")
        if not changes:
            return license
        if license.status == LicenseStatus.TERMINATED.value:
            raise IllegalTransitionError("A terminated license cannot be modified",
                                         current=license.status)

        if changes.get("status") is not None:
            target = LICENSE_MACHINE.coerce(changes["status"])
            if target != license.status:
                raise IllegalTransitionError(
                    "License status changes go through renew, suspend, reactivate or terminate",
                    current=license.status,
                    target=target,
                )
        changes = {field: value for field, value in changes.items() if field != "status"}
        if not changes:
            return license

        merged = {field: getattr(license, field) for field in UPDATABLE_FIELDS}
        merged.update(changes)
        values = validate_license(merged)

        for field in changes:
            setattr(license, field, values[field])

        commit_or_raise(self.db, license, f"update license {license_id}")
        self.refresh_aggregates(license)
        logger.info(f"Updated license {license.id}: {', '.join(sorted(changes))}")
        return license

    # Seats

    def _append_seats(self, license: License, seat_count: int, source: str,
                      adjustment_id: Optional[int] = None) -> LicenseSeat:
        """Stage a ledger entry in the current transaction"""
        entry = LicenseSeat(
            license_id=license.id,
            adjustment_id=adjustment_id,
            seat_count=seat_count,
            source=source,
        )
        self.db.add(entry)
        return entry

    def add_seats(self, license_id: int, seat_count: int, source: str = "manual") -> License:
        license = self.require_license(license_id)
        seat_count = _positive_int(seat_count, "seat_count")
        if license.status in (LicenseStatus.TERMINATED.value, LicenseStatus.EXPIRED.value):
            raise IllegalTransitionError(f"Cannot add seats to a {license.status} license",
                                         current=license.status)

        self._append_seats(license, seat_count, source)
        commit_or_raise(self.db, license, f"add seats to license {license_id}")
        self.refresh_aggregates(license)
        logger.info(f"License {license.id}: +{seat_count} seats ({source}), total {license.total_seats_purchased}")
        return license

    # Renewal and status

    def renew(self, license_id: int) -> License:
        """
        Advance the period window by one billing cycle

        The new period starts where the old one ended. An expired license
        becomes active again.
        """
        license = self.require_license(license_id)
        if license.status not in (LicenseStatus.ACTIVE.value, LicenseStatus.EXPIRED.value):
            raise IllegalTransitionError(f"Cannot renew a {license.status} license", current=license.status)

        def advance(entity: License) -> None:
            new_start = as_utc(entity.current_period_end)
            new_end = add_months(new_start, entity.billing_cycle_months)
            entity.current_period_start = new_start
            entity.current_period_end = new_end
            entity.next_renewal_date = new_end

        if license.status == LicenseStatus.EXPIRED.value:
            apply_transition(self.db, license, LICENSE_MACHINE, LicenseStatus.ACTIVE, mutate=advance)
        else:
            advance(license)
            commit_or_raise(self.db, license, f"renew license {license_id}")

        self.refresh_aggregates(license)
        logger.info(
            f"Renewed license {license.id} to {as_utc(license.current_period_start).date()} - "
            f"{as_utc(license.current_period_end).date()}"
        )
        return license

    def suspend(self, license_id: int) -> License:
        license = self.require_license(license_id)
        apply_transition(self.db, license, LICENSE_MACHINE, LicenseStatus.SUSPENDED)
        return self.refresh_aggregates(license)

    def reactivate(self, license_id: int, now: Optional[datetime] = None) -> License:
        license = self.require_license(license_id)

        def not_lapsed(entity: License) -> None:
            if entity.is_expired(now):
                raise IllegalTransitionError(
                    "License period has ended; renew it instead of reactivating",
                    current=entity.status,
                    target=LicenseStatus.ACTIVE.value,
                )

        apply_transition(self.db, license, LICENSE_MACHINE, LicenseStatus.ACTIVE, guard=not_lapsed)
        return self.refresh_aggregates(license)

    def terminate(self, license_id: int) -> License:
        license = self.require_license(license_id)
        apply_transition(self.db, license, LICENSE_MACHINE, LicenseStatus.TERMINATED)
        return self.refresh_aggregates(license)

    def expire_overdue_licenses(self, now: Optional[datetime] = None) -> int:
        """
        Mark active/suspended licenses past their period end as EXPIRED

        Idempotent: already-expired rows are not candidates.
        """
        now = as_utc(now) or utcnow()
        candidates = (
            self.db.query(License)
            .filter(
                License.status.in_([LicenseStatus.ACTIVE.value, LicenseStatus.SUSPENDED.value]),
                License.current_period_end < now,
            )
            .all()
        )

        def still_lapsed(entity: License) -> None:
            if not entity.is_expired(now):
                raise IllegalTransitionError("License was renewed concurrently", current=entity.status)

        expired = 0
        for license in candidates:
            try:
                apply_transition(self.db, license, LICENSE_MACHINE, LicenseStatus.EXPIRED, guard=still_lapsed)
                expired += 1
            except IllegalTransitionError as e:
                logger.warning(f"Skipping license {license.id} in expiry sweep: {e}")

        logger.info(f"Expiry sweep: {expired} of {len(candidates)} candidate licenses expired")
        return expired
