"""
Tests for license lifecycle and the seat ledger
"""
import pytest
from decimal import Decimal

from conftest import utc
from license_billing.db.models.license import License, LicenseStatus
from license_billing.exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    MissingFieldError,
    NotFoundError,
)
from license_billing.services.license_service import LICENSE_MACHINE, LicenseService, validate_license


def license_values(**overrides):
    values = {
        "tenant_id": 7,
        "license_type": "standard",
        "billing_cycle_months": 1,
        "current_period_start": utc(2024, 1, 1),
        "current_period_end": utc(2024, 1, 31),
    }
    values.update(overrides)
    return values


class TestValidateLicense:

    def test_zero_length_period_rejected(self):
        """start == end"""
        with pytest.raises(InvariantViolationError):
            validate_license(license_values(current_period_end=utc(2024, 1, 1)))

    def test_renewal_defaults_to_period_end(self):
        values = validate_license(license_values())
        assert values["next_renewal_date"] == utc(2024, 1, 31)

    def test_renewal_before_period_end_rejected(self):
        with pytest.raises(InvariantViolationError):
            validate_license(license_values(next_renewal_date=utc(2024, 1, 15)))

    def test_unsupported_cycle_length(self):
        with pytest.raises(InvalidValueError):
            validate_license(license_values(billing_cycle_months=2))

    def test_missing_tenant(self):
        values = license_values()
        del values["tenant_id"]
        with pytest.raises(MissingFieldError):
            validate_license(values)

    def test_codes_are_normalised(self):
        values = validate_license(license_values(billing_currency_code="xaf", billing_country_code="cm"))
        assert values["billing_currency_code"] == "XAF"
        assert values["billing_country_code"] == "CM"


class TestLicensePricing:
    """Pure helpers on a transient License"""

    def setup_method(self):
        self.license = License(
            base_price_usd=Decimal("3.00"),
            minimum_seats=5,
            billing_cycle_months=3,
            status=LicenseStatus.ACTIVE.value,
            current_period_start=utc(2024, 1, 1),
            current_period_end=utc(2024, 3, 31),
        )

    def test_minimum_seats_apply(self):
        self.license.load_aggregates(2, None)
        assert self.license.billable_seats() == 5
        assert self.license.calculate_monthly_price() == Decimal("15.00")

    def test_period_price(self):
        self.license.load_aggregates(12, None)
        assert self.license.calculate_period_price() == Decimal("108.00")

    def test_expiry_helpers(self):
        assert self.license.is_active(now=utc(2024, 2, 1))
        assert self.license.is_expired(now=utc(2024, 4, 1))
        assert self.license.is_expiring_soon(days=30, now=utc(2024, 3, 15))
        assert not self.license.is_expiring_soon(days=30, now=utc(2024, 1, 15))


class TestLicenseService:

    def test_create_assigns_guid_and_seats(self, db_session):
        license = LicenseService(db_session).create_license(license_values(initial_seats=12))

        assert license.guid == 100001
        assert license.total_seats_purchased == 12
        assert license.status == "ACTIVE"
        assert license.to_dict()["monthly_price_usd"] == 36.0

    def test_guid_lookup(self, db_session):
        service = LicenseService(db_session)
        created = service.create_license(license_values())
        assert service.get_by_guid(created.guid).id == created.id
        with pytest.raises(NotFoundError):
            service.get_by_guid(999999)

    def test_unknown_field_rejected(self, db_session):
        with pytest.raises(InvalidValueError):
            LicenseService(db_session).create_license(license_values(seats=3))

    def test_partial_update_keeps_other_fields(self, db_session, make_license):
        license = make_license(license_type="enterprise")
        updated = LicenseService(db_session).update_license(license.id, {"minimum_seats": 20})

        assert updated.minimum_seats == 20
        assert updated.license_type == "enterprise"
        assert updated.version == 2

    def test_update_revalidates_window(self, db_session, make_license):
        license = make_license()
        with pytest.raises(InvariantViolationError):
            LicenseService(db_session).update_license(license.id, {"current_period_end": utc(2023, 12, 1)})

    def test_update_status_follows_machine(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license()
        service.terminate(license.id)
        with pytest.raises(IllegalTransitionError):
            service.update_license(license.id, {"status": "ACTIVE"})

    def test_update_cannot_revive_expired_license(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license()
        assert service.expire_overdue_licenses(now=utc(2024, 3, 1)) == 1

        with pytest.raises(IllegalTransitionError):
            service.update_license(license.id, {"status": "ACTIVE"})

        db_session.refresh(license)
        assert license.status == LicenseStatus.EXPIRED.value

    def test_update_with_unchanged_status_is_ignored(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license()

        updated = service.update_license(license.id, {"status": "active", "minimum_seats": 8})

        assert updated.status == LicenseStatus.ACTIVE.value
        assert updated.minimum_seats == 8

    def test_seat_ledger_read_after_write(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license(initial_seats=10)

        service.add_seats(license.id, 3)
        service.add_seats(license.id, 2, source="import")

        assert service.get_total_seats_purchased(license.id) == 15

    def test_renew_advances_window(self, db_session, make_license):
        license = make_license(current_period_start=utc(2024, 1, 31), current_period_end=utc(2024, 2, 29))
        renewed = LicenseService(db_session).renew(license.id)

        assert renewed.current_period_start.date() == utc(2024, 2, 29).date()
        assert renewed.current_period_end.date() == utc(2024, 3, 29).date()
        assert renewed.next_renewal_date.date() == utc(2024, 3, 29).date()

    def test_suspend_and_reactivate(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license(current_period_end=utc(2099, 1, 1))

        assert service.suspend(license.id).status == "SUSPENDED"
        assert service.reactivate(license.id).status == "ACTIVE"

    def test_reactivate_lapsed_license_rejected(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license()
        service.suspend(license.id)
        with pytest.raises(IllegalTransitionError):
            service.reactivate(license.id, now=utc(2024, 6, 1))

    def test_terminated_is_terminal(self, db_session, make_license):
        service = LicenseService(db_session)
        license = make_license()
        service.terminate(license.id)

        assert LICENSE_MACHINE.is_terminal("TERMINATED")
        with pytest.raises(IllegalTransitionError):
            service.renew(license.id)
        with pytest.raises(IllegalTransitionError):
            service.add_seats(license.id, 1)

    def test_expiry_sweep_then_renew(self, db_session, make_license):
        service = LicenseService(db_session)
        lapsed = make_license(tenant_id=1)
        current = make_license(tenant_id=2, current_period_end=utc(2099, 1, 1))

        assert service.expire_overdue_licenses(now=utc(2024, 2, 15)) == 1
        assert service.expire_overdue_licenses(now=utc(2024, 2, 15)) == 0
        assert service.require_license(current.id).status == "ACTIVE"

        renewed = service.renew(lapsed.id)
        assert renewed.status == "ACTIVE"
        assert renewed.current_period_start.date() == utc(2024, 1, 31).date()

    def test_expiring_soon(self, db_session, make_license):
        make_license(current_period_end=utc(2024, 1, 20))
        service = LicenseService(db_session)
        assert len(service.get_expiring_soon(days=30, now=utc(2024, 1, 5))) == 1
        assert service.get_expiring_soon(days=5, now=utc(2024, 1, 5)) == []
