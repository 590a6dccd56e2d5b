"""
License adjustment service for mid-cycle seat increases

An adjustment is billed on its own: the added seats are charged for the
months left in the license's current period, taxed, converted to the
tenant's currency and settled independently of the next billing cycle.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import config
from ..db.models.license import License, LicenseStatus
from ..db.models.license_adjustment import (
    LicenseAdjustment,
    AdjustmentPaymentStatus,
    ADJUSTMENT_MONEY_FIELDS,
)
from ..exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    MissingFieldError,
    NotFoundError,
    PersistenceError,
)
from ..timeutils import as_utc, utcnow
from .currency_math import (
    ensure_base_currency_rate,
    ensure_consistent,
    normalize_currency_code,
    round_currency,
    round_rate,
    to_decimal,
    to_local,
)
from .identifiers import generate_guid
from .license_service import LicenseService
from .state_machine import StatusMachine, apply_transition, commit_or_raise
from .tax_calculator import TaxCalculator

logger = logging.getLogger(__name__)


ADJUSTMENT_MACHINE = StatusMachine(
    "license adjustment",
    AdjustmentPaymentStatus,
    {
        AdjustmentPaymentStatus.PENDING: {AdjustmentPaymentStatus.PROCESSING, AdjustmentPaymentStatus.CANCELLED},
        AdjustmentPaymentStatus.PROCESSING: {
            AdjustmentPaymentStatus.COMPLETED,
            AdjustmentPaymentStatus.FAILED,
            AdjustmentPaymentStatus.CANCELLED,
        },
        AdjustmentPaymentStatus.COMPLETED: {AdjustmentPaymentStatus.REFUNDED},
        AdjustmentPaymentStatus.FAILED: {AdjustmentPaymentStatus.PENDING, AdjustmentPaymentStatus.CANCELLED},
        AdjustmentPaymentStatus.CANCELLED: {AdjustmentPaymentStatus.PENDING},
        AdjustmentPaymentStatus.REFUNDED: set(),
    },
)

MONTHS_PRECISION = Decimal("0.01")
LOCAL_FIELDS = tuple(local for _, local in ADJUSTMENT_MONEY_FIELDS)


def calculate_months_remaining(
    period_start: datetime,
    period_end: datetime,
    adjustment_date: datetime,
    cycle_months: int,
) -> Decimal:
    """
    Fraction of the billing cycle left at adjustment_date, in months

    months = cycle_months x days_remaining / total_days, rounded to 0.01
    """
    period_start = as_utc(period_start)
    period_end = as_utc(period_end)
    adjustment_date = as_utc(adjustment_date)

    if not period_start <= adjustment_date < period_end:
        raise InvalidValueError(
            f"adjustment_date {adjustment_date.date()} is outside the current period "
            f"{period_start.date()} - {period_end.date()}",
            {"field": "adjustment_date"},
        )

    total_days = (period_end - period_start).days
    days_remaining = (period_end - adjustment_date).days
    if total_days <= 0 or days_remaining <= 0:
        raise InvalidValueError("No full day left in the current period to prorate",
                                {"field": "adjustment_date"})

    months = Decimal(cycle_months) * Decimal(days_remaining) / Decimal(total_days)
    return months.quantize(MONTHS_PRECISION, rounding=ROUND_HALF_UP)


def _employee_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidValueError("employees_added_count must be a positive integer",
                                {"field": "employees_added_count"})
    return value


def calculate_adjustment_subtotal(employees_added: int, months_remaining: Decimal, price_per_employee: Decimal) -> Decimal:
    return round_currency(Decimal(employees_added) * Decimal(months_remaining) * Decimal(price_per_employee))


def validate_adjustment(values: Dict[str, Any]) -> None:
    """Numeric and currency guards, then the derived-amount invariants"""
    for field in ("license_id", "employees_added_count", "months_remaining", "price_per_employee_usd",
                  "exchange_rate_used", "billing_currency_code", "subtotal_usd"):
        if values.get(field) in (None, ""):
            raise MissingFieldError(field, "license adjustment")

    employees = _employee_count(values["employees_added_count"])

    months = to_decimal(values["months_remaining"], "months_remaining")
    if months <= 0:
        raise InvalidValueError("months_remaining must be positive", {"field": "months_remaining"})

    price = to_decimal(values["price_per_employee_usd"], "price_per_employee_usd")
    if price <= 0:
        raise InvalidValueError("price_per_employee_usd must be positive", {"field": "price_per_employee_usd"})

    rate = to_decimal(values["exchange_rate_used"], "exchange_rate_used")
    if rate <= 0:
        raise InvalidValueError("exchange_rate_used must be positive", {"field": "exchange_rate_used"})

    currency = normalize_currency_code(values["billing_currency_code"])
    ensure_base_currency_rate(currency, rate)

    subtotal = to_decimal(values["subtotal_usd"], "subtotal_usd")
    expected = calculate_adjustment_subtotal(employees, months, price)
    if abs(subtotal - expected) > config.AMOUNT_TOLERANCE:
        raise InvariantViolationError(
            f"subtotal_usd {subtotal} != {employees} employees x {months} months x {price} (= {expected})",
            {"field": "subtotal_usd", "expected": str(expected)},
        )

    tax = to_decimal(values.get("tax_amount_usd"), "tax_amount_usd") or Decimal("0")
    if tax < 0:
        raise InvalidValueError("tax_amount_usd must not be negative", {"field": "tax_amount_usd"})
    total = to_decimal(values.get("total_amount_usd"), "total_amount_usd")
    if total is not None and total != subtotal + tax:
        raise InvariantViolationError(f"total_amount_usd {total} != subtotal {subtotal} + tax {tax}")

    for usd_field, local_field in ADJUSTMENT_MONEY_FIELDS:
        usd = to_decimal(values.get(usd_field), usd_field)
        local = to_decimal(values.get(local_field), local_field)
        if usd is not None and local is not None:
            ensure_consistent(usd, local, rate, local_field)


class LicenseAdjustmentService:
    """Service for prorated seat adjustments and their payment lifecycle"""

    def __init__(self, db: Session, tax_calculator: Optional[TaxCalculator] = None):
        self.db = db
        self.tax_calculator = tax_calculator or TaxCalculator(db)
        self.license_service = LicenseService(db)

    def get_adjustment(self, adjustment_id: int) -> Optional[LicenseAdjustment]:
        return self.db.query(LicenseAdjustment).filter(LicenseAdjustment.id == adjustment_id).first()

    def require_adjustment(self, adjustment_id: int) -> LicenseAdjustment:
        adjustment = self.get_adjustment(adjustment_id)
        if not adjustment:
            raise NotFoundError("LicenseAdjustment", adjustment_id)
        return adjustment

    def get_by_guid(self, guid: int) -> LicenseAdjustment:
        adjustment = self.db.query(LicenseAdjustment).filter(LicenseAdjustment.guid == guid).first()
        if not adjustment:
            raise NotFoundError("LicenseAdjustment", f"guid={guid}")
        return adjustment

    def calculate_proration(
        self,
        license_id: int,
        employees_added_count: int,
        adjustment_date: Optional[datetime] = None,
        price_per_employee_usd: Optional[Decimal] = None,
    ) -> Dict[str, Any]:
        """
        Preview the charge for adding seats now

        Returns:
            Dictionary with proration details (nothing is persisted)
        """
        _employee_count(employees_added_count)
        license = self.license_service.require_license(license_id)
        adjustment_date = as_utc(adjustment_date) or utcnow()
        price = to_decimal(price_per_employee_usd, "price_per_employee_usd") or Decimal(str(license.base_price_usd))

        months = calculate_months_remaining(
            license.current_period_start,
            license.current_period_end,
            adjustment_date,
            license.billing_cycle_months,
        )
        subtotal = calculate_adjustment_subtotal(employees_added_count, months, price)

        return {
            "license_id": license.id,
            "adjustment_date": adjustment_date.isoformat(),
            "period_start": as_utc(license.current_period_start).isoformat(),
            "period_end": as_utc(license.current_period_end).isoformat(),
            "employees_added_count": employees_added_count,
            "months_remaining": float(months),
            "price_per_employee_usd": float(price),
            "subtotal_usd": float(subtotal),
        }

    def create_adjustment(
        self,
        license_id: int,
        employees_added_count: int,
        exchange_rate_used: Optional[Decimal] = None,
        billing_currency_code: Optional[str] = None,
        adjustment_date: Optional[datetime] = None,
        price_per_employee_usd: Optional[Decimal] = None,
        months_remaining: Optional[Decimal] = None,
        subtotal_usd: Optional[Decimal] = None,
        tax_amount_usd: Optional[Decimal] = None,
        payment_due_immediately: bool = True,
        local_overrides: Optional[Dict[str, Decimal]] = None,
    ) -> LicenseAdjustment:
        """
        Record a mid-cycle seat increase

        The added seats go into the license's seat ledger in the same
        transaction, so total_seats_purchased reflects them immediately.

        Args:
            license_id: License receiving the seats
            employees_added_count: Seats added (> 0)
            exchange_rate_used: Local units per USD (1 for USD, required otherwise)
            billing_currency_code: Defaults to the license's currency
            adjustment_date: Defaults to now; must fall inside the current period
            price_per_employee_usd: Defaults to the license's base price
            months_remaining: Defaults to the prorated value for adjustment_date
            subtotal_usd: If given, must match employees x months x price within tolerance
            tax_amount_usd: If absent, looked up from the license's billing country
            local_overrides: Explicit subtotal_local/tax_amount_local/total_amount_local
        """
        license = self.license_service.require_license(license_id)
        if license.status != LicenseStatus.ACTIVE.value:
            raise IllegalTransitionError(f"Cannot add seats to a {license.status} license",
                                         current=license.status)

        currency = normalize_currency_code(billing_currency_code or license.billing_currency_code)
        if exchange_rate_used is None:
            if currency != "USD":
                raise MissingFieldError("exchange_rate_used", "license adjustment")
            exchange_rate_used = Decimal("1")
        rate = to_decimal(exchange_rate_used, "exchange_rate_used")

        adjustment_date = as_utc(adjustment_date) or utcnow()
        price = to_decimal(price_per_employee_usd, "price_per_employee_usd")
        if price is None:
            price = Decimal(str(license.base_price_usd))
        months = to_decimal(months_remaining, "months_remaining")
        if months is None:
            months = calculate_months_remaining(
                license.current_period_start,
                license.current_period_end,
                adjustment_date,
                license.billing_cycle_months,
            )

        _employee_count(employees_added_count)

        computed_subtotal = calculate_adjustment_subtotal(employees_added_count, months, price)
        supplied_subtotal = to_decimal(subtotal_usd, "subtotal_usd")
        subtotal = round_currency(supplied_subtotal) if supplied_subtotal is not None else computed_subtotal

        tax_rules_applied: List[Dict[str, Any]] = []
        tax = to_decimal(tax_amount_usd, "tax_amount_usd")
        if tax is None:
            result = self.tax_calculator.calculate_for(subtotal, license.billing_country_code,
                                                       reference_date=adjustment_date)
            tax = result.tax_amount
            if result.is_taxed and rate > 0:
                tax_rules_applied.append(result.applied_entry(rate))
        tax = round_currency(tax)

        values: Dict[str, Any] = {
            "license_id": license.id,
            "adjustment_date": adjustment_date,
            "employees_added_count": employees_added_count,
            "months_remaining": months,
            "price_per_employee_usd": price,
            "subtotal_usd": subtotal,
            "tax_amount_usd": tax,
            "total_amount_usd": subtotal + tax,
            "billing_currency_code": currency,
            "exchange_rate_used": rate,
            "tax_rules_applied": tax_rules_applied,
            "payment_due_immediately": payment_due_immediately,
        }

        overrides = local_overrides or {}
        unknown = set(overrides) - set(LOCAL_FIELDS)
        if unknown:
            raise InvalidValueError(f"Unknown local amount fields: {', '.join(sorted(unknown))}")
        if rate > 0:
            for usd_field, local_field in ADJUSTMENT_MONEY_FIELDS:
                explicit = to_decimal(overrides.get(local_field), local_field)
                values[local_field] = round_currency(explicit) if explicit is not None \
                    else to_local(values[usd_field], rate)

        validate_adjustment(values)

        adjustment = LicenseAdjustment(guid=generate_guid(self.db, LicenseAdjustment), **values)
        self.db.add(adjustment)
        try:
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to insert license adjustment: {e}", exc_info=True)
            raise PersistenceError("Failed to create license adjustment") from e
        self.license_service._append_seats(license, employees_added_count, source="adjustment",
                                           adjustment_id=adjustment.id)
        commit_or_raise(self.db, adjustment, "create license adjustment")
        self.license_service.refresh_aggregates(license)

        logger.info(
            f"Created adjustment {adjustment.id} for license {license.id}: +{employees_added_count} seats "
            f"for {months} months = {adjustment.total_amount_usd} USD "
            f"({adjustment.total_amount_local} {currency})"
        )
        return adjustment

    def mark_invoice_sent(self, adjustment_id: int, now: Optional[datetime] = None) -> LicenseAdjustment:
        adjustment = self.require_adjustment(adjustment_id)
        if adjustment.payment_status in (AdjustmentPaymentStatus.CANCELLED.value,
                                         AdjustmentPaymentStatus.REFUNDED.value):
            raise IllegalTransitionError(
                f"Cannot send an invoice for a {adjustment.payment_status} adjustment",
                current=adjustment.payment_status,
            )
        adjustment.invoice_sent_at = as_utc(now) or utcnow()
        commit_or_raise(self.db, adjustment, f"mark invoice sent for adjustment {adjustment_id}")
        logger.info(f"Adjustment {adjustment.id}: invoice sent")
        return adjustment

    def update_payment_status(
        self,
        adjustment_id: int,
        status: str,
        completed_at: Optional[datetime] = None,
    ) -> LicenseAdjustment:
        """
        Move the adjustment along its payment lifecycle

        payment_completed_at is stamped only when the new status is COMPLETED.
        """
        adjustment = self.require_adjustment(adjustment_id)
        target = ADJUSTMENT_MACHINE.coerce(status)
        stamp = as_utc(completed_at) or utcnow()

        def record_completion(entity: LicenseAdjustment) -> None:
            if target == AdjustmentPaymentStatus.COMPLETED.value:
                entity.payment_completed_at = stamp

        return apply_transition(self.db, adjustment, ADJUSTMENT_MACHINE, target,
                                status_attr="payment_status", mutate=record_completion)

    # Queries

    def list_adjustments(
        self,
        license_id: Optional[int] = None,
        payment_status: Optional[str] = None,
        currency: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[LicenseAdjustment]:
        query = self.db.query(LicenseAdjustment)
        if license_id is not None:
            query = query.filter(LicenseAdjustment.license_id == license_id)
        if payment_status:
            query = query.filter(LicenseAdjustment.payment_status == ADJUSTMENT_MACHINE.coerce(payment_status))
        if currency:
            query = query.filter(LicenseAdjustment.billing_currency_code == normalize_currency_code(currency))
        if created_from is not None:
            query = query.filter(LicenseAdjustment.created_at >= as_utc(created_from))
        if created_to is not None:
            query = query.filter(LicenseAdjustment.created_at <= as_utc(created_to))
        return (
            query.order_by(LicenseAdjustment.created_at.desc(), LicenseAdjustment.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def get_pending_payment(self) -> List[LicenseAdjustment]:
        return (
            self.db.query(LicenseAdjustment)
            .filter(LicenseAdjustment.payment_status.in_(
                [AdjustmentPaymentStatus.PENDING.value, AdjustmentPaymentStatus.PROCESSING.value]
            ))
            .order_by(LicenseAdjustment.created_at)
            .all()
        )

    def get_invoiced_not_paid(self) -> List[LicenseAdjustment]:
        return (
            self.db.query(LicenseAdjustment)
            .filter(
                LicenseAdjustment.invoice_sent_at.isnot(None),
                LicenseAdjustment.payment_status.in_([
                    AdjustmentPaymentStatus.PENDING.value,
                    AdjustmentPaymentStatus.PROCESSING.value,
                    AdjustmentPaymentStatus.FAILED.value,
                ]),
            )
            .order_by(LicenseAdjustment.invoice_sent_at)
            .all()
        )

    def get_paid_between(self, start: datetime, end: datetime) -> List[LicenseAdjustment]:
        return (
            self.db.query(LicenseAdjustment)
            .filter(
                LicenseAdjustment.payment_status == AdjustmentPaymentStatus.COMPLETED.value,
                LicenseAdjustment.payment_completed_at >= as_utc(start),
                LicenseAdjustment.payment_completed_at <= as_utc(end),
            )
            .order_by(LicenseAdjustment.payment_completed_at)
            .all()
        )

    def get_financial_stats_by_currency(self) -> List[Dict[str, Any]]:
        """
        Per-currency totals computed with GROUP BY in the database

        COMPLETED adjustments count as completed, every other status as pending.
        """
        completed = LicenseAdjustment.payment_status == AdjustmentPaymentStatus.COMPLETED.value
        zero = Decimal("0")

        rows = (
            self.db.query(
                LicenseAdjustment.billing_currency_code,
                func.count(LicenseAdjustment.id),
                func.sum(LicenseAdjustment.total_amount_usd),
                func.sum(LicenseAdjustment.total_amount_local),
                func.sum(case((completed, zero), else_=LicenseAdjustment.total_amount_usd)),
                func.sum(case((completed, zero), else_=LicenseAdjustment.total_amount_local)),
                func.sum(case((completed, LicenseAdjustment.total_amount_usd), else_=zero)),
                func.sum(case((completed, LicenseAdjustment.total_amount_local), else_=zero)),
                func.avg(LicenseAdjustment.exchange_rate_used),
                func.sum(LicenseAdjustment.employees_added_count),
            )
            .group_by(LicenseAdjustment.billing_currency_code)
            .order_by(LicenseAdjustment.billing_currency_code)
            .all()
        )

        def money(value) -> float:
            return float(round_currency(Decimal(str(value or 0))))

        stats = []
        for (currency, count, total_usd, total_local, pending_usd, pending_local,
             completed_usd, completed_local, avg_rate, employees) in rows:
            stats.append({
                "currency_code": currency,
                "total_adjustments": int(count),
                "total_amount_usd": money(total_usd),
                "total_amount_local": money(total_local),
                "pending_amount_usd": money(pending_usd),
                "pending_amount_local": money(pending_local),
                "completed_amount_usd": money(completed_usd),
                "completed_amount_local": money(completed_local),
                "average_exchange_rate": float(round_rate(Decimal(str(avg_rate or 0)))),
                "total_employees_added": int(employees or 0),
            })
        return stats


def settle_adjustment(adjustment: LicenseAdjustment, now: Optional[datetime] = None) -> None:
    """
    Stage the move to COMPLETED without committing

    A PENDING adjustment passes through PROCESSING, both steps checked
    against the transition table.
    """
    if adjustment.payment_status == AdjustmentPaymentStatus.PENDING.value:
        ADJUSTMENT_MACHINE.assert_transition(adjustment.payment_status, AdjustmentPaymentStatus.PROCESSING)
        adjustment.payment_status = AdjustmentPaymentStatus.PROCESSING.value
    ADJUSTMENT_MACHINE.assert_transition(adjustment.payment_status, AdjustmentPaymentStatus.COMPLETED)
    adjustment.payment_status = AdjustmentPaymentStatus.COMPLETED.value
    adjustment.payment_completed_at = as_utc(now) or utcnow()
