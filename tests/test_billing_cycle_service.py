"""
Tests for the billing cycle calculator and lifecycle
"""
import pytest
from datetime import timedelta
from decimal import Decimal

from conftest import utc
from license_billing.db.models.billing_cycle import BillingStatus
from license_billing.exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    MissingFieldError,
    NotFoundError,
)
from license_billing.services.billing_cycle_service import (
    BillingCycleService,
    CYCLE_MACHINE,
    calculate_cycle_amounts,
    prepare_cycle,
)
from license_billing.services.tax_calculator import TaxCalculator


def cycle_values(**overrides):
    values = {
        "license_id": 1,
        "period_start": utc(2024, 1, 1),
        "period_end": utc(2024, 1, 31),
        "base_employee_count": 10,
        "final_employee_count": 10,
        "base_amount_usd": Decimal("1000.00"),
        "adjustments_amount_usd": Decimal("0"),
        "tax_amount_usd": Decimal("80.00"),
        "billing_currency_code": "XAF",
        "exchange_rate_used": Decimal("655.957"),
        "payment_due_date": utc(2024, 2, 7),
    }
    values.update(overrides)
    return values


class TestCycleAmounts:
    """Pure derivation and validation, no store"""

    def test_scenario_xaf_cycle_totals(self):
        """1000 USD base + 80 USD tax at 655.957 XAF/USD"""
        amounts = calculate_cycle_amounts(cycle_values())

        assert amounts["subtotal_usd"] == Decimal("1000.00")
        assert amounts["total_amount_usd"] == Decimal("1080.00")
        assert amounts["subtotal_local"] == Decimal("655957.00")
        assert amounts["tax_amount_local"] == Decimal("52476.56")
        assert amounts["total_amount_local"] == Decimal("708433.56")

    def test_derivation_is_idempotent(self):
        values = cycle_values(adjustments_amount_usd=Decimal("12.345"))
        first = calculate_cycle_amounts(values)
        second = calculate_cycle_amounts({**values, **first})
        assert first == second

    def test_adjustments_feed_subtotal(self):
        amounts = calculate_cycle_amounts(cycle_values(adjustments_amount_usd=Decimal("25.50")))
        assert amounts["subtotal_usd"] == Decimal("1025.50")
        assert amounts["total_amount_usd"] == Decimal("1105.50")

    def test_explicit_local_within_tolerance_is_kept(self):
        prepared = prepare_cycle(cycle_values(base_amount_local=Decimal("655957.01")))
        assert prepared["base_amount_local"] == Decimal("655957.01")

    def test_explicit_local_outside_tolerance_is_rejected(self):
        with pytest.raises(InvariantViolationError):
            prepare_cycle(cycle_values(total_amount_local=Decimal("708434.56")))

    def test_supplied_subtotal_must_match(self):
        with pytest.raises(InvariantViolationError):
            prepare_cycle(cycle_values(subtotal_usd=Decimal("999.00")))

    def test_usd_requires_unit_rate(self):
        with pytest.raises(InvariantViolationError):
            prepare_cycle(cycle_values(billing_currency_code="USD", exchange_rate_used=Decimal("2")))

    def test_usd_with_unit_rate_has_identical_amounts(self):
        prepared = prepare_cycle(cycle_values(billing_currency_code="USD", exchange_rate_used=Decimal("1")))
        assert prepared["total_amount_local"] == prepared["total_amount_usd"]

    def test_missing_field(self):
        values = cycle_values()
        del values["payment_due_date"]
        with pytest.raises(MissingFieldError):
            prepare_cycle(values)

    def test_period_must_move_forward(self):
        with pytest.raises(InvariantViolationError):
            prepare_cycle(cycle_values(period_end=utc(2024, 1, 1)))

    def test_due_date_not_before_period_end(self):
        with pytest.raises(InvariantViolationError):
            prepare_cycle(cycle_values(payment_due_date=utc(2024, 1, 15)))

    def test_negative_tax_rejected(self):
        with pytest.raises(InvalidValueError):
            prepare_cycle(cycle_values(tax_amount_usd=Decimal("-1")))

    def test_invalid_currency_code(self):
        with pytest.raises(InvalidValueError):
            prepare_cycle(cycle_values(billing_currency_code="xa1"))

    def test_employee_counts_checked_before_rate(self):
        """First failing guard wins"""
        with pytest.raises(InvariantViolationError):
            prepare_cycle(cycle_values(final_employee_count=5, exchange_rate_used=Decimal("0")))

    def test_fractional_employee_count_rejected(self):
        with pytest.raises(InvalidValueError):
            prepare_cycle(cycle_values(base_employee_count=2.5))

    def test_completed_without_payment_timestamp_rejected(self):
        values = cycle_values(billing_status="COMPLETED", invoice_generated_at=utc(2024, 2, 1))
        with pytest.raises(InvariantViolationError):
            prepare_cycle(values)

    def test_completed_with_timestamps_accepted(self):
        values = cycle_values(
            billing_status="COMPLETED",
            invoice_generated_at=utc(2024, 2, 1),
            payment_completed_at=utc(2024, 2, 3),
        )
        assert prepare_cycle(values)["billing_status"] == "COMPLETED"

    def test_overdue_before_due_date_is_illegal(self):
        with pytest.raises(IllegalTransitionError):
            prepare_cycle(cycle_values(billing_status="OVERDUE"), now=utc(2024, 2, 1))


class TestCycleMachine:

    def test_completed_is_terminal(self):
        assert CYCLE_MACHINE.is_terminal(BillingStatus.COMPLETED)
        assert not CYCLE_MACHINE.can_transition("COMPLETED", "CANCELLED")

    def test_overdue_cannot_be_paid(self):
        assert not CYCLE_MACHINE.can_transition("OVERDUE", "COMPLETED")
        assert CYCLE_MACHINE.can_transition("OVERDUE", "CANCELLED")

    def test_pending_paths(self):
        assert CYCLE_MACHINE.allowed_from("PENDING") == {"PROCESSING", "COMPLETED", "OVERDUE", "CANCELLED"}


class TestBillingCycleService:
    """Store-backed lifecycle"""

    def test_create_cycle_persists_scenario_amounts(self, db_session, make_license):
        license = make_license(billing_currency_code="XAF")
        cycle = BillingCycleService(db_session).create_cycle(cycle_values(license_id=license.id))

        assert cycle.billing_status == BillingStatus.PENDING.value
        assert cycle.total_amount_usd == Decimal("1080.00")
        assert abs(cycle.total_amount_local - Decimal("708433.56")) <= Decimal("0.01")
        assert cycle.version == 1

    def test_create_looks_up_tax_when_absent(self, db_session, make_license):
        TaxCalculator(db_session).create_rule("CM", "VAT", "Cameroon VAT", Decimal("19.25"),
                                              effective_date=utc(2023, 1, 1))
        license = make_license(billing_currency_code="XAF", billing_country_code="CM")
        values = cycle_values(license_id=license.id)
        del values["tax_amount_usd"]

        cycle = BillingCycleService(db_session).create_cycle(values)

        assert cycle.tax_amount_usd == Decimal("192.50")
        assert cycle.tax_rules_applied[0]["name"] == "Cameroon VAT"

    def test_build_cycle_for_license(self, db_session, make_license):
        TaxCalculator(db_session).create_rule("CM", "VAT", "Cameroon VAT", Decimal("19.25"),
                                              effective_date=utc(2023, 1, 1))
        license = make_license(billing_currency_code="XAF", billing_country_code="CM", initial_seats=10)

        cycle = BillingCycleService(db_session).build_cycle_for_license(
            license.id, exchange_rate_used=Decimal("655.957")
        )

        assert cycle.base_employee_count == 10
        assert cycle.base_amount_usd == Decimal("30.00")
        assert cycle.adjustments_amount_usd == Decimal("0.00")
        assert cycle.tax_amount_usd == Decimal("5.78")
        assert cycle.total_amount_usd == Decimal("35.78")
        assert cycle.total_amount_local == Decimal("23470.14")
        assert cycle.payment_due_date.date() == (utc(2024, 1, 31) + timedelta(days=7)).date()

    def test_build_uses_minimum_seats(self, db_session, make_license):
        license = make_license(initial_seats=2, minimum_seats=5)
        cycle = BillingCycleService(db_session).build_cycle_for_license(license.id)
        assert cycle.base_employee_count == 5
        assert cycle.base_amount_usd == Decimal("15.00")

    def test_build_twice_for_same_period_rejected(self, db_session, make_license):
        license = make_license()
        service = BillingCycleService(db_session)
        service.build_cycle_for_license(license.id)
        with pytest.raises(InvariantViolationError):
            service.build_cycle_for_license(license.id)

    def test_build_requires_rate_for_foreign_currency(self, db_session, make_license):
        license = make_license(billing_currency_code="EUR")
        with pytest.raises(MissingFieldError):
            BillingCycleService(db_session).build_cycle_for_license(license.id)

    def test_invoice_then_pay(self, db_session, make_license):
        license = make_license()
        service = BillingCycleService(db_session)
        cycle = service.build_cycle_for_license(license.id)

        cycle = service.mark_as_invoiced(cycle.id, now=utc(2024, 2, 1))
        assert cycle.billing_status == "PROCESSING"
        assert cycle.invoice_generated_at is not None

        cycle = service.mark_as_paid(cycle.id, now=utc(2024, 2, 2))
        assert cycle.billing_status == "COMPLETED"
        assert cycle.payment_completed_at is not None
        assert cycle.version == 3

    def test_completed_cycle_cannot_be_cancelled(self, db_session, make_license):
        license = make_license()
        service = BillingCycleService(db_session)
        cycle = service.build_cycle_for_license(license.id)
        service.mark_as_paid(cycle.id)

        with pytest.raises(IllegalTransitionError):
            service.cancel(cycle.id)

    def test_completed_cycle_is_immutable(self, db_session, make_license):
        license = make_license()
        service = BillingCycleService(db_session)
        cycle = service.build_cycle_for_license(license.id)
        service.mark_as_paid(cycle.id)

        with pytest.raises(IllegalTransitionError):
            service.update_cycle(cycle.id, {"notes": "late edit"})

    def test_mark_overdue_before_due_date(self, db_session, make_license):
        """Due date still in the future"""
        license = make_license()
        service = BillingCycleService(db_session)
        cycle = service.build_cycle_for_license(license.id)

        with pytest.raises(IllegalTransitionError):
            service.mark_as_overdue(cycle.id, now=utc(2024, 2, 1))
        db_session.refresh(cycle)
        assert cycle.billing_status == "PENDING"

    def test_mark_overdue_after_due_date(self, db_session, make_license):
        license = make_license()
        service = BillingCycleService(db_session)
        cycle = service.build_cycle_for_license(license.id)

        cycle = service.mark_as_overdue(cycle.id, now=utc(2024, 2, 8))
        assert cycle.billing_status == "OVERDUE"

    def test_update_rederives_locals(self, db_session, make_license):
        license = make_license(billing_currency_code="XAF")
        service = BillingCycleService(db_session)
        cycle = service.create_cycle(cycle_values(license_id=license.id))

        cycle = service.update_cycle(cycle.id, {"tax_amount_usd": Decimal("100.00")})

        assert cycle.total_amount_usd == Decimal("1100.00")
        assert cycle.total_amount_local == Decimal("721552.70")

    def test_update_base_looks_up_tax_again(self, db_session, make_license):
        TaxCalculator(db_session).create_rule("CM", "VAT", "Cameroon VAT", Decimal("10"),
                                              effective_date=utc(2023, 1, 1))
        license = make_license(billing_currency_code="XAF", billing_country_code="CM")
        service = BillingCycleService(db_session)
        cycle = service.create_cycle(cycle_values(license_id=license.id, tax_amount_usd=None))
        assert cycle.tax_amount_usd == Decimal("100.00")

        cycle = service.update_cycle(cycle.id, {"base_amount_usd": Decimal("2000.00")})

        assert cycle.tax_amount_usd == Decimal("200.00")
        assert cycle.total_amount_usd == Decimal("2200.00")
        assert cycle.tax_rules_applied[0]["amount_usd"] == 200.0

    def test_update_with_explicit_tax_keeps_it(self, db_session, make_license):
        TaxCalculator(db_session).create_rule("CM", "VAT", "Cameroon VAT", Decimal("10"),
                                              effective_date=utc(2023, 1, 1))
        license = make_license(billing_currency_code="XAF", billing_country_code="CM")
        service = BillingCycleService(db_session)
        cycle = service.create_cycle(cycle_values(license_id=license.id, tax_amount_usd=None))

        cycle = service.update_cycle(cycle.id, {"base_amount_usd": Decimal("2000.00"),
                                                "tax_amount_usd": Decimal("150.00")})

        assert cycle.tax_amount_usd == Decimal("150.00")
        assert cycle.total_amount_usd == Decimal("2150.00")

    def test_guid_assigned_and_looked_up(self, db_session, make_license):
        service = BillingCycleService(db_session)
        first = service.create_cycle(cycle_values(license_id=make_license(tenant_id=1).id))
        second = service.create_cycle(cycle_values(license_id=make_license(tenant_id=2).id))

        assert first.guid != second.guid
        assert service.get_by_guid(second.guid).id == second.id
        assert first.to_dict()["guid"] == first.guid
        with pytest.raises(NotFoundError):
            service.get_by_guid(1)

    def test_update_with_illegal_status_rejected(self, db_session, make_license):
        license = make_license(billing_currency_code="XAF")
        service = BillingCycleService(db_session)
        cycle = service.create_cycle(cycle_values(license_id=license.id))
        service.cancel(cycle.id, "duplicate")

        with pytest.raises(IllegalTransitionError):
            service.update_cycle(cycle.id, {"billing_status": "PENDING"})

    def test_overdue_sweep_is_idempotent(self, db_session, make_license):
        service = BillingCycleService(db_session)
        first = make_license(tenant_id=1)
        second = make_license(tenant_id=2, current_period_end=utc(2024, 3, 31))
        service.build_cycle_for_license(first.id)
        service.build_cycle_for_license(second.id)

        assert service.mark_overdue_cycles(now=utc(2024, 2, 15)) == 1
        assert service.mark_overdue_cycles(now=utc(2024, 2, 15)) == 0
        assert len(service.get_overdue_cycles(now=utc(2024, 2, 15))) == 1

    def test_list_filters(self, db_session, make_license):
        license = make_license(billing_currency_code="XAF")
        service = BillingCycleService(db_session)
        service.create_cycle(cycle_values(license_id=license.id))

        assert len(service.list_cycles(license_id=license.id, status="pending", currency="xaf")) == 1
        assert service.list_cycles(status="COMPLETED") == []
        assert len(service.get_pending_invoice_cycles()) == 1
        assert len(service.get_due_soon_cycles(days=10, now=utc(2024, 2, 1))) == 1
