"""
Billing cycle calculator

Derives the two-currency amounts of a cycle, validates them, and drives
the cycle through its payment-status lifecycle:

    PENDING -> PROCESSING -> COMPLETED
    PENDING/PROCESSING -> OVERDUE     (only once payment_due_date has passed)
    any non-COMPLETED state -> CANCELLED
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from ..config import config
from ..db.models.billing_cycle import BillingCycle, BillingStatus, CYCLE_MONEY_FIELDS
from ..db.models.license import License, LicenseStatus
from ..exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    MissingFieldError,
    NotFoundError,
)
from ..timeutils import as_utc, utcnow
from .currency_math import (
    ensure_base_currency_rate,
    ensure_consistent,
    normalize_currency_code,
    round_currency,
    to_decimal,
    to_local,
)
from .identifiers import generate_guid
from .license_service import LicenseService
from .state_machine import StatusMachine, apply_transition, commit_or_raise
from .tax_calculator import TaxCalculator

logger = logging.getLogger(__name__)


CYCLE_MACHINE = StatusMachine(
    "billing cycle",
    BillingStatus,
    {
        BillingStatus.PENDING: {
            BillingStatus.PROCESSING,
            BillingStatus.COMPLETED,
            BillingStatus.OVERDUE,
            BillingStatus.CANCELLED,
        },
        BillingStatus.PROCESSING: {
            BillingStatus.COMPLETED,
            BillingStatus.OVERDUE,
            BillingStatus.CANCELLED,
        },
        BillingStatus.OVERDUE: {BillingStatus.CANCELLED},
        BillingStatus.FAILED: {BillingStatus.CANCELLED},
        BillingStatus.COMPLETED: set(),
        BillingStatus.CANCELLED: set(),
    },
)

REQUIRED_FIELDS = (
    "license_id",
    "period_start",
    "period_end",
    "base_employee_count",
    "final_employee_count",
    "base_amount_usd",
    "billing_currency_code",
    "exchange_rate_used",
    "payment_due_date",
)

LOCAL_FIELDS = tuple(local for _, local in CYCLE_MONEY_FIELDS)
DERIVED_USD_FIELDS = ("subtotal_usd", "total_amount_usd")

INPUT_FIELDS = REQUIRED_FIELDS + LOCAL_FIELDS + DERIVED_USD_FIELDS + (
    "adjustments_amount_usd",
    "tax_amount_usd",
    "tax_rules_applied",
    "billing_status",
    "invoice_generated_at",
    "payment_completed_at",
    "notes",
)

# Fields copied from a stored cycle when re-deriving on update
_STORED_INPUTS = (
    "license_id",
    "period_start",
    "period_end",
    "base_employee_count",
    "final_employee_count",
    "base_amount_usd",
    "adjustments_amount_usd",
    "tax_amount_usd",
    "billing_currency_code",
    "exchange_rate_used",
    "payment_due_date",
    "tax_rules_applied",
    "billing_status",
    "invoice_generated_at",
    "payment_completed_at",
    "notes",
)

# Inputs whose change makes a looked-up tax stale
_TAX_INPUTS = ("base_amount_usd", "adjustments_amount_usd", "exchange_rate_used", "period_start")


def _check_required(values: Dict[str, Any]) -> None:
    for field in REQUIRED_FIELDS:
        if values.get(field) in (None, ""):
            raise MissingFieldError(field, "billing cycle")


def _count(value: Any, field: str) -> int:
    try:
        whole = not isinstance(value, bool) and int(value) == value
    except (TypeError, ValueError):
        whole = False
    if not whole:
        raise InvalidValueError(f"{field} must be a whole number (got {value!r})", {"field": field})
    if value < 0:
        raise InvalidValueError(f"{field} must not be negative", {"field": field})
    return int(value)


def calculate_cycle_amounts(values: Dict[str, Any]) -> Dict[str, Decimal]:
    """
    Derive subtotal, total and every local-currency amount

    subtotal = base + adjustments, total = subtotal + tax, and each local
    field is the USD field times the exchange rate rounded to cents. A
    local value present in ``values`` is taken as an explicit override.
    Running this on its own output returns the same figures.
    """
    rate = to_decimal(values.get("exchange_rate_used"), "exchange_rate_used")
    base = round_currency(to_decimal(values.get("base_amount_usd"), "base_amount_usd"))
    adjustments = round_currency(to_decimal(values.get("adjustments_amount_usd"), "adjustments_amount_usd") or 0)
    tax = round_currency(to_decimal(values.get("tax_amount_usd"), "tax_amount_usd") or 0)

    subtotal = base + adjustments
    amounts = {
        "base_amount_usd": base,
        "adjustments_amount_usd": adjustments,
        "subtotal_usd": subtotal,
        "tax_amount_usd": tax,
        "total_amount_usd": subtotal + tax,
    }

    for usd_field, local_field in CYCLE_MONEY_FIELDS:
        explicit = to_decimal(values.get(local_field), local_field)
        if explicit is not None:
            amounts[local_field] = round_currency(explicit)
        else:
            amounts[local_field] = to_local(amounts[usd_field], rate)

    return amounts


def validate_cycle(values: Dict[str, Any], now: Optional[datetime] = None) -> None:
    """
    Check a fully derived cycle; guards run in a fixed order and the first
    failure is raised
    """
    _check_required(values)

    base_count = _count(values["base_employee_count"], "base_employee_count")
    final_count = _count(values["final_employee_count"], "final_employee_count")
    if final_count < base_count:
        raise InvariantViolationError(
            f"final_employee_count ({final_count}) must be >= base_employee_count ({base_count})"
        )

    base = to_decimal(values["base_amount_usd"], "base_amount_usd")
    if base < 0:
        raise InvalidValueError("base_amount_usd must not be negative", {"field": "base_amount_usd"})
    for field in ("adjustments_amount_usd", "tax_amount_usd"):
        amount = to_decimal(values.get(field), field)
        if amount is not None and amount < 0:
            raise InvalidValueError(f"{field} must not be negative", {"field": field})

    rate = to_decimal(values["exchange_rate_used"], "exchange_rate_used")
    if rate <= 0:
        raise InvalidValueError("exchange_rate_used must be positive", {"field": "exchange_rate_used"})

    period_start = as_utc(values["period_start"])
    period_end = as_utc(values["period_end"])
    due = as_utc(values["payment_due_date"])
    if period_end <= period_start:
        raise InvariantViolationError("period_end must be after period_start")
    if due < period_end:
        raise InvariantViolationError("payment_due_date must not be before period_end")

    currency = normalize_currency_code(values["billing_currency_code"])
    ensure_base_currency_rate(currency, rate)

    adjustments = to_decimal(values.get("adjustments_amount_usd"), "adjustments_amount_usd") or Decimal("0")
    tax = to_decimal(values.get("tax_amount_usd"), "tax_amount_usd") or Decimal("0")
    subtotal = to_decimal(values.get("subtotal_usd"), "subtotal_usd")
    total = to_decimal(values.get("total_amount_usd"), "total_amount_usd")
    if subtotal is not None and subtotal != base + adjustments:
        raise InvariantViolationError(f"subtotal_usd {subtotal} != base {base} + adjustments {adjustments}")
    if total is not None and subtotal is not None and total != subtotal + tax:
        raise InvariantViolationError(f"total_amount_usd {total} != subtotal {subtotal} + tax {tax}")
    for usd_field, local_field in CYCLE_MONEY_FIELDS:
        usd = to_decimal(values.get(usd_field), usd_field)
        local = to_decimal(values.get(local_field), local_field)
        if usd is not None and local is not None:
            ensure_consistent(usd, local, rate, local_field)

    status = CYCLE_MACHINE.coerce(values.get("billing_status") or BillingStatus.PENDING)
    if status == BillingStatus.COMPLETED.value:
        if not values.get("invoice_generated_at"):
            raise InvariantViolationError("A COMPLETED billing cycle requires invoice_generated_at")
        if not values.get("payment_completed_at"):
            raise InvariantViolationError("A COMPLETED billing cycle requires payment_completed_at")
    elif status == BillingStatus.OVERDUE.value:
        now = as_utc(now) or utcnow()
        if not now > due:
            raise IllegalTransitionError(
                f"Billing cycle is not overdue until {due.isoformat()}",
                target=BillingStatus.OVERDUE.value,
            )


def prepare_cycle(values: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Derive then validate; returns the column values to persist"""
    _check_required(values)
    amounts = calculate_cycle_amounts(values)

    for field in DERIVED_USD_FIELDS:
        supplied = to_decimal(values.get(field), field)
        if supplied is not None and round_currency(supplied) != amounts[field]:
            raise InvariantViolationError(
                f"{field} {supplied} does not match the derived value {amounts[field]}",
                {"field": field},
            )

    prepared = dict(values)
    prepared.update(amounts)
    prepared["billing_currency_code"] = normalize_currency_code(values["billing_currency_code"])
    prepared["exchange_rate_used"] = to_decimal(values["exchange_rate_used"], "exchange_rate_used")
    prepared["billing_status"] = CYCLE_MACHINE.coerce(values.get("billing_status") or BillingStatus.PENDING)
    for field in ("period_start", "period_end", "payment_due_date", "invoice_generated_at", "payment_completed_at"):
        prepared[field] = as_utc(values.get(field))
    prepared["tax_rules_applied"] = list(values.get("tax_rules_applied") or [])

    validate_cycle(prepared, now)
    return prepared


def settle_cycle(cycle: BillingCycle, now: Optional[datetime] = None) -> None:
    """
    Stage the move to COMPLETED without committing

    Used by mark_as_paid and by payment completion so both share one rule.
    """
    CYCLE_MACHINE.assert_transition(cycle.billing_status, BillingStatus.COMPLETED)
    now = as_utc(now) or utcnow()
    if cycle.invoice_generated_at is None:
        cycle.invoice_generated_at = now
    cycle.payment_completed_at = now
    cycle.billing_status = BillingStatus.COMPLETED.value


class BillingCycleService:
    """Service for billing cycle calculation and lifecycle"""

    def __init__(self, db: Session, tax_calculator: Optional[TaxCalculator] = None):
        self.db = db
        self.tax_calculator = tax_calculator or TaxCalculator(db)
        self.license_service = LicenseService(db)

    # Lookups

    def get_cycle(self, cycle_id: int) -> Optional[BillingCycle]:
        return self.db.query(BillingCycle).filter(BillingCycle.id == cycle_id).first()

    def require_cycle(self, cycle_id: int) -> BillingCycle:
        cycle = self.get_cycle(cycle_id)
        if not cycle:
            raise NotFoundError("BillingCycle", cycle_id)
        return cycle

    def get_by_guid(self, guid: int) -> BillingCycle:
        cycle = self.db.query(BillingCycle).filter(BillingCycle.guid == guid).first()
        if not cycle:
            raise NotFoundError("BillingCycle", f"guid={guid}")
        return cycle

    # Create / update

    def _resolve_tax(self, license: License, values: Dict[str, Any]) -> None:
        """Fill tax_amount_usd and tax_rules_applied from the tax rule lookup"""
        rate = to_decimal(values["exchange_rate_used"], "exchange_rate_used")
        subtotal = round_currency(
            to_decimal(values["base_amount_usd"], "base_amount_usd")
            + (to_decimal(values.get("adjustments_amount_usd"), "adjustments_amount_usd") or 0)
        )
        result = self.tax_calculator.calculate_for(
            subtotal,
            license.billing_country_code,
            reference_date=values["period_start"],
        )
        values["tax_amount_usd"] = result.tax_amount
        if values.get("tax_rules_applied") is None:
            values["tax_rules_applied"] = [result.applied_entry(rate)] if result.is_taxed else []

    def create_cycle(self, data: Dict[str, Any], now: Optional[datetime] = None) -> BillingCycle:
        """
        Create a billing cycle

        When tax_amount_usd is not supplied it is looked up from the
        license's billing country. Local amounts are derived unless given.
        """
        unknown = set(data) - set(INPUT_FIELDS)
        if unknown:
            raise InvalidValueError(f"Unknown billing cycle fields: {', '.join(sorted(unknown))}")

        values = {key: value for key, value in data.items() if value is not None}
        _check_required(values)
        license = self.license_service.require_license(values["license_id"])

        if values.get("tax_amount_usd") is None:
            self._resolve_tax(license, values)

        prepared = prepare_cycle(values, now)
        cycle = BillingCycle(
            guid=generate_guid(self.db, BillingCycle),
            **{field: prepared.get(field) for field in INPUT_FIELDS if field in prepared},
        )
        self.db.add(cycle)
        commit_or_raise(self.db, cycle, "create billing cycle")

        logger.info(
            f"Created billing cycle {cycle.id} for license {cycle.license_id}: "
            f"{cycle.total_amount_usd} USD / {cycle.total_amount_local} {cycle.billing_currency_code}"
        )
        return cycle

    def update_cycle(self, cycle_id: int, changes: Dict[str, Any], now: Optional[datetime] = None) -> BillingCycle:
        """
        Partial update with full re-derivation

        Only local amounts supplied in ``changes`` count as overrides; the
        others are derived again from the (possibly new) USD figures. When
        the subtotal inputs change and no tax_amount_usd comes with them,
        the tax and tax_rules_applied are looked up again.
        """
        cycle = self.require_cycle(cycle_id)
        unknown = set(changes) - (set(INPUT_FIELDS) - {"license_id"})
        if unknown:
            raise InvalidValueError(f"Unknown or read-only billing cycle fields: {', '.join(sorted(unknown))}")
        if cycle.billing_status == BillingStatus.COMPLETED.value:
            raise IllegalTransitionError("A COMPLETED billing cycle cannot be modified",
                                         current=cycle.billing_status)
        if not changes:
            return cycle

        if changes.get("billing_status") is not None:
            target = CYCLE_MACHINE.coerce(changes["billing_status"])
            if target != cycle.billing_status:
                CYCLE_MACHINE.assert_transition(cycle.billing_status, target)

        values = {field: getattr(cycle, field) for field in _STORED_INPUTS}
        values.update(changes)
        if "tax_amount_usd" not in changes and any(field in changes for field in _TAX_INPUTS):
            if "tax_rules_applied" not in changes:
                values["tax_rules_applied"] = None
            self._resolve_tax(self.license_service.require_license(cycle.license_id), values)
        prepared = prepare_cycle(values, now)

        for field in set(_STORED_INPUTS) | set(LOCAL_FIELDS) | set(DERIVED_USD_FIELDS):
            if field == "license_id":
                continue
            if field in prepared:
                setattr(cycle, field, prepared[field])

        commit_or_raise(self.db, cycle, f"update billing cycle {cycle_id}")
        logger.info(f"Updated billing cycle {cycle.id}: {', '.join(sorted(changes))}")
        return cycle

    def build_cycle_for_license(
        self,
        license_id: int,
        exchange_rate_used: Optional[Decimal] = None,
        billing_currency_code: Optional[str] = None,
        tax_amount_usd: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> BillingCycle:
        """
        Create the recurring cycle for the license's current period

        Seats billed are max(total_seats_purchased, minimum_seats) at
        base_price_usd per seat per month; payment is due PAYMENT_DUE_DAYS
        after the period ends.
        """
        license = self.license_service.require_license(license_id)
        if license.status != LicenseStatus.ACTIVE.value:
            raise IllegalTransitionError(f"Cannot bill a {license.status} license", current=license.status)

        currency = normalize_currency_code(billing_currency_code or license.billing_currency_code)
        if exchange_rate_used is None:
            if currency != "USD":
                raise MissingFieldError("exchange_rate_used", "billing cycle")
            exchange_rate_used = Decimal("1")

        period_start = as_utc(license.current_period_start)
        existing = (
            self.db.query(BillingCycle)
            .filter(
                BillingCycle.license_id == license.id,
                BillingCycle.period_start == period_start,
                BillingCycle.billing_status != BillingStatus.CANCELLED.value,
            )
            .first()
        )
        if existing:
            raise InvariantViolationError(
                f"License {license.id} already has billing cycle {existing.id} for this period",
                {"billing_cycle_id": existing.id},
            )

        seats = license.billable_seats()
        period_end = as_utc(license.current_period_end)
        data = {
            "license_id": license.id,
            "period_start": period_start,
            "period_end": period_end,
            "base_employee_count": seats,
            "final_employee_count": seats,
            "base_amount_usd": license.calculate_period_price(),
            "adjustments_amount_usd": Decimal("0"),
            "tax_amount_usd": tax_amount_usd,
            "billing_currency_code": currency,
            "exchange_rate_used": exchange_rate_used,
            "payment_due_date": period_end + timedelta(days=config.PAYMENT_DUE_DAYS),
        }
        return self.create_cycle(data, now)

    # Lifecycle

    def mark_as_invoiced(self, cycle_id: int, now: Optional[datetime] = None) -> BillingCycle:
        cycle = self.require_cycle(cycle_id)
        stamp = as_utc(now) or utcnow()

        def record_invoice(entity: BillingCycle) -> None:
            entity.invoice_generated_at = stamp

        return apply_transition(self.db, cycle, CYCLE_MACHINE, BillingStatus.PROCESSING,
                                status_attr="billing_status", mutate=record_invoice)

    def mark_as_paid(self, cycle_id: int, now: Optional[datetime] = None) -> BillingCycle:
        cycle = self.require_cycle(cycle_id)
        stamp = as_utc(now) or utcnow()

        def record_payment(entity: BillingCycle) -> None:
            if entity.invoice_generated_at is None:
                entity.invoice_generated_at = stamp
            entity.payment_completed_at = stamp

        return apply_transition(self.db, cycle, CYCLE_MACHINE, BillingStatus.COMPLETED,
                                status_attr="billing_status", mutate=record_payment)

    def mark_as_overdue(self, cycle_id: int, now: Optional[datetime] = None) -> BillingCycle:
        """Fails with IllegalTransitionError unless payment_due_date has passed"""
        cycle = self.require_cycle(cycle_id)
        now = as_utc(now) or utcnow()

        def due_date_passed(entity: BillingCycle) -> None:
            due = as_utc(entity.payment_due_date)
            if not now > due:
                raise IllegalTransitionError(
                    f"Billing cycle {entity.id} is not overdue until {due.isoformat()}",
                    current=entity.billing_status,
                    target=BillingStatus.OVERDUE.value,
                )

        return apply_transition(self.db, cycle, CYCLE_MACHINE, BillingStatus.OVERDUE,
                                status_attr="billing_status", guard=due_date_passed)

    def cancel(self, cycle_id: int, reason: Optional[str] = None) -> BillingCycle:
        cycle = self.require_cycle(cycle_id)

        def record_reason(entity: BillingCycle) -> None:
            if reason:
                entity.notes = f"{entity.notes}\n{reason}" if entity.notes else reason

        return apply_transition(self.db, cycle, CYCLE_MACHINE, BillingStatus.CANCELLED,
                                status_attr="billing_status", mutate=record_reason)

    # Queries

    def list_cycles(
        self,
        license_id: Optional[int] = None,
        status: Optional[str] = None,
        currency: Optional[str] = None,
        period_from: Optional[datetime] = None,
        period_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[BillingCycle]:
        """Filter by license, status, currency and a period window (start >= from, end <= to)"""
        query = self.db.query(BillingCycle)
        if license_id is not None:
            query = query.filter(BillingCycle.license_id == license_id)
        if status:
            query = query.filter(BillingCycle.billing_status == CYCLE_MACHINE.coerce(status))
        if currency:
            query = query.filter(BillingCycle.billing_currency_code == normalize_currency_code(currency))
        if period_from is not None:
            query = query.filter(BillingCycle.period_start >= as_utc(period_from))
        if period_to is not None:
            query = query.filter(BillingCycle.period_end <= as_utc(period_to))
        return (
            query.order_by(BillingCycle.period_start.desc(), BillingCycle.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def get_overdue_cycles(self, now: Optional[datetime] = None) -> List[BillingCycle]:
        """Cycles past their due date that are neither paid nor cancelled"""
        now = as_utc(now) or utcnow()
        return (
            self.db.query(BillingCycle)
            .filter(
                BillingCycle.payment_due_date < now,
                BillingCycle.billing_status.notin_(
                    [BillingStatus.COMPLETED.value, BillingStatus.CANCELLED.value]
                ),
            )
            .order_by(BillingCycle.payment_due_date)
            .all()
        )

    def get_due_soon_cycles(self, days: Optional[int] = None, now: Optional[datetime] = None) -> List[BillingCycle]:
        """Open cycles (PENDING/PROCESSING) due within ``days``"""
        days = config.DUE_SOON_DAYS if days is None else days
        now = as_utc(now) or utcnow()
        return (
            self.db.query(BillingCycle)
            .filter(
                BillingCycle.billing_status.in_([BillingStatus.PENDING.value, BillingStatus.PROCESSING.value]),
                BillingCycle.payment_due_date >= now,
                BillingCycle.payment_due_date <= now + timedelta(days=days),
            )
            .order_by(BillingCycle.payment_due_date)
            .all()
        )

    def get_pending_invoice_cycles(self) -> List[BillingCycle]:
        """PENDING cycles that have not been invoiced yet"""
        return (
            self.db.query(BillingCycle)
            .filter(
                BillingCycle.billing_status == BillingStatus.PENDING.value,
                BillingCycle.invoice_generated_at.is_(None),
            )
            .order_by(BillingCycle.period_start)
            .all()
        )

    def get_completed_cycles(self, license_id: Optional[int] = None) -> List[BillingCycle]:
        query = self.db.query(BillingCycle).filter(BillingCycle.billing_status == BillingStatus.COMPLETED.value)
        if license_id is not None:
            query = query.filter(BillingCycle.license_id == license_id)
        return query.order_by(BillingCycle.payment_completed_at.desc()).all()

    def mark_overdue_cycles(self, now: Optional[datetime] = None) -> int:
        """
        Sweep: move every open cycle past its due date to OVERDUE

        Idempotent; rows that changed underneath are skipped.
        """
        now = as_utc(now) or utcnow()
        candidates = (
            self.db.query(BillingCycle)
            .filter(
                BillingCycle.billing_status.in_([BillingStatus.PENDING.value, BillingStatus.PROCESSING.value]),
                BillingCycle.payment_due_date < now,
            )
            .all()
        )

        marked = 0
        for cycle in candidates:
            try:
                self.mark_as_overdue(cycle.id, now)
                marked += 1
            except IllegalTransitionError as e:
                logger.warning(f"Skipping billing cycle {cycle.id} in overdue sweep: {e}")

        logger.info(f"Overdue sweep: {marked} of {len(candidates)} candidate cycles marked OVERDUE")
        return marked
