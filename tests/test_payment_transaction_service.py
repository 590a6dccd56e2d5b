"""
Tests for payment transactions and parent settlement
"""
import pytest
from decimal import Decimal

from conftest import utc
from license_billing.config import config
from license_billing.exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    NotFoundError,
)
from license_billing.services.billing_cycle_service import BillingCycleService
from license_billing.services.license_adjustment_service import LicenseAdjustmentService
from license_billing.services.payment_transaction_service import (
    PAYMENT_MACHINE,
    PaymentTransactionService,
    payment_machine,
    validate_transaction,
)


def transaction_values(**overrides):
    values = {
        "payment_method": "mobile_money",
        "payment_reference": "PAY-TEST-1",
        "amount_usd": Decimal("10.00"),
        "amount_local": Decimal("6559.57"),
        "exchange_rate_used": Decimal("655.957"),
        "currency_code": "XAF",
        "initiated_at": utc(2024, 2, 1),
    }
    values.update(overrides)
    return values


class TestValidateTransaction:

    def test_failed_without_reason_rejected(self):
        values = transaction_values(transaction_status="FAILED", failure_reason="", failed_at=utc(2024, 2, 2))
        with pytest.raises(InvariantViolationError):
            validate_transaction(values)

    def test_failed_before_initiated_rejected(self):
        values = transaction_values(transaction_status="FAILED", failure_reason="card declined",
                                    failed_at=utc(2024, 1, 31))
        with pytest.raises(InvariantViolationError):
            validate_transaction(values)

    def test_completed_requires_timestamp(self):
        with pytest.raises(InvariantViolationError):
            validate_transaction(transaction_values(transaction_status="COMPLETED"))

    def test_amount_tolerance(self):
        validate_transaction(transaction_values(amount_local=Decimal("6559.58")))
        with pytest.raises(InvariantViolationError):
            validate_transaction(transaction_values(amount_local=Decimal("6560.00")))

    def test_usd_rate_must_be_one(self):
        with pytest.raises(InvariantViolationError):
            validate_transaction(transaction_values(currency_code="USD"))


class TestPaymentMachine:

    def test_failed_is_terminal_by_default(self):
        assert PAYMENT_MACHINE.is_terminal("FAILED")
        assert not PAYMENT_MACHINE.can_transition("PENDING", "COMPLETED")

    def test_retry_edge_behind_flag(self, monkeypatch):
        monkeypatch.setattr(config, "PAYMENT_ALLOW_FAILED_RETRY", True)
        assert payment_machine().can_transition("FAILED", "PENDING")
        assert not PAYMENT_MACHINE.can_transition("FAILED", "PENDING")


class TestPaymentTransactionService:

    @pytest.fixture
    def cycle(self, db_session, make_license):
        license = make_license(billing_currency_code="XAF")
        return BillingCycleService(db_session).build_cycle_for_license(
            license.id, exchange_rate_used=Decimal("655.957")
        )

    @pytest.fixture
    def adjustment(self, db_session, make_license):
        license = make_license(tenant_id=3)
        return LicenseAdjustmentService(db_session).create_adjustment(
            license.id, 4, adjustment_date=utc(2024, 1, 16)
        )

    def test_amounts_default_to_parent_totals(self, db_session, cycle):
        transaction = PaymentTransactionService(db_session).create_transaction(
            "card", billing_cycle_id=cycle.id
        )

        assert transaction.transaction_status == "PENDING"
        assert transaction.amount_usd == cycle.total_amount_usd
        assert transaction.amount_local == cycle.total_amount_local
        assert transaction.currency_code == "XAF"
        assert transaction.payment_reference.startswith("PAY-")

    def test_exactly_one_parent(self, db_session, cycle, adjustment):
        service = PaymentTransactionService(db_session)
        with pytest.raises(InvalidValueError):
            service.create_transaction("card")
        with pytest.raises(InvalidValueError):
            service.create_transaction("card", billing_cycle_id=cycle.id, adjustment_id=adjustment.id)
        with pytest.raises(NotFoundError):
            service.create_transaction("card", billing_cycle_id=9999)

    def test_inconsistent_local_amount_rejected(self, db_session, cycle):
        with pytest.raises(InvariantViolationError):
            PaymentTransactionService(db_session).create_transaction(
                "card", billing_cycle_id=cycle.id,
                amount_usd=Decimal("10.00"), amount_local=Decimal("6600.00"),
            )

    def test_duplicate_reference_rejected(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        service.create_transaction("card", billing_cycle_id=cycle.id, payment_reference="PAY-FIXED")
        with pytest.raises(InvariantViolationError):
            service.create_transaction("card", billing_cycle_id=cycle.id, payment_reference="PAY-FIXED")

    def test_complete_settles_cycle(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id)

        with pytest.raises(IllegalTransitionError):
            service.complete(transaction.id)

        service.start_processing(transaction.id)
        transaction = service.complete(transaction.id, gateway_response={"provider_id": "ch_1"})

        assert transaction.transaction_status == "COMPLETED"
        assert transaction.gateway_response == {"provider_id": "ch_1"}
        db_session.refresh(cycle)
        assert cycle.billing_status == "COMPLETED"
        assert cycle.invoice_generated_at is not None
        assert cycle.payment_completed_at is not None

    def test_settled_parent_takes_no_new_payment(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id)
        service.start_processing(transaction.id)
        service.complete(transaction.id)

        with pytest.raises(IllegalTransitionError):
            service.create_transaction("card", billing_cycle_id=cycle.id)

    def test_complete_settles_adjustment(self, db_session, adjustment):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("bank_transfer", adjustment_id=adjustment.id)
        service.start_processing(transaction.id)
        service.complete(transaction.id)

        db_session.refresh(adjustment)
        assert adjustment.payment_status == "COMPLETED"
        assert adjustment.payment_completed_at is not None

    def test_completed_before_initiated_rejected(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id,
                                                 initiated_at=utc(2024, 2, 1))
        service.start_processing(transaction.id)
        with pytest.raises(InvariantViolationError):
            service.complete(transaction.id, completed_at=utc(2024, 1, 1))

    def test_fail_requires_reason(self, db_session, cycle):
        """Empty failure_reason"""
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id)

        with pytest.raises(InvariantViolationError):
            service.fail(transaction.id, "   ")

        transaction = service.fail(transaction.id, "insufficient funds")
        assert transaction.transaction_status == "FAILED"
        assert transaction.failed_at is not None

    def test_retry_disabled_by_default(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id)
        service.fail(transaction.id, "timeout")

        with pytest.raises(IllegalTransitionError):
            service.retry(transaction.id)

    def test_retry_reopens_with_new_reference(self, db_session, cycle, monkeypatch):
        monkeypatch.setattr(config, "PAYMENT_ALLOW_FAILED_RETRY", True)
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id)
        old_reference = transaction.payment_reference
        service.fail(transaction.id, "timeout")

        transaction = service.retry(transaction.id)

        assert transaction.transaction_status == "PENDING"
        assert transaction.payment_reference != old_reference
        assert transaction.failure_reason is None

    def test_current_transaction(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        first = service.create_transaction("card", billing_cycle_id=cycle.id)
        service.fail(first.id, "declined")
        assert service.get_current_transaction(billing_cycle_id=cycle.id) is None

        second = service.create_transaction("card", billing_cycle_id=cycle.id)
        assert service.get_current_transaction(billing_cycle_id=cycle.id).id == second.id
        assert len(service.list_transactions(billing_cycle_id=cycle.id)) == 2

    def test_update_pending_rederives_local(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", billing_cycle_id=cycle.id)

        transaction = service.update_transaction(transaction.id, {"amount_usd": Decimal("10.00")})
        assert transaction.amount_local == Decimal("6559.57")

        service.start_processing(transaction.id)
        with pytest.raises(IllegalTransitionError):
            service.update_transaction(transaction.id, {"payment_method": "cash"})

    def test_partial_payment_leaves_cycle_open(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        first = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("1.00"))
        assert first.amount_local == Decimal("655.96")
        service.start_processing(first.id)
        service.complete(first.id)

        db_session.refresh(cycle)
        assert cycle.billing_status == "PENDING"
        assert service.get_amount_paid(billing_cycle_id=cycle.id) == Decimal("1.00")

        rest = service.create_transaction("card", billing_cycle_id=cycle.id)
        assert rest.amount_usd == cycle.total_amount_usd - Decimal("1.00")
        service.start_processing(rest.id)
        service.complete(rest.id)

        db_session.refresh(cycle)
        assert cycle.billing_status == "COMPLETED"

    def test_partial_payment_leaves_adjustment_open(self, db_session, adjustment):
        service = PaymentTransactionService(db_session)
        transaction = service.create_transaction("card", adjustment_id=adjustment.id, amount_usd=Decimal("1.00"))
        service.start_processing(transaction.id)
        service.complete(transaction.id)

        db_session.refresh(adjustment)
        assert adjustment.payment_status == "PENDING"

    def test_overpayment_rejected(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        with pytest.raises(InvariantViolationError):
            service.create_transaction("card", billing_cycle_id=cycle.id,
                                       amount_usd=cycle.total_amount_usd + Decimal("1.00"))

        half = cycle.total_amount_usd - Decimal("10.00")
        first = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=half)
        second = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=half)
        service.start_processing(first.id)
        service.start_processing(second.id)
        service.complete(first.id)

        with pytest.raises(InvariantViolationError):
            service.complete(second.id)
        db_session.refresh(second)
        assert second.transaction_status == "PROCESSING"
        db_session.refresh(cycle)
        assert cycle.billing_status == "PENDING"

    def test_guid_assigned_and_looked_up(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        first = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("5.00"))
        second = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("5.00"))

        assert second.guid == first.guid + 1
        assert service.get_by_guid(second.guid).payment_reference == second.payment_reference
        assert first.to_dict()["guid"] == first.guid
        with pytest.raises(NotFoundError):
            service.get_by_guid(7)

    def test_list_filters(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        small = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("5.00"),
                                           initiated_at=utc(2024, 2, 1))
        large = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("20.00"),
                                           initiated_at=utc(2024, 2, 10))
        service.start_processing(large.id)
        service.complete(large.id, completed_at=utc(2024, 2, 11))

        assert len(service.list_transactions(currency="xaf")) == 2
        assert service.list_transactions(currency="USD") == []
        assert [t.id for t in service.list_transactions(date_from=utc(2024, 2, 5))] == [large.id]
        assert [t.id for t in service.list_transactions(date_to=utc(2024, 2, 5))] == [small.id]
        assert [t.id for t in service.list_transactions(date_from=utc(2024, 2, 1),
                                                        date_field="completed_at")] == [large.id]
        assert [t.id for t in service.list_transactions(min_amount=Decimal("10"))] == [large.id]
        assert [t.id for t in service.list_transactions(max_amount=Decimal("5000"),
                                                        amount_field="local")] == [small.id]

        with pytest.raises(InvalidValueError):
            service.list_transactions(date_field="created_at")
        with pytest.raises(InvalidValueError):
            service.list_transactions(amount_field="eur")

    def test_statistics(self, db_session, cycle):
        service = PaymentTransactionService(db_session)
        paid = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("10.00"),
                                          initiated_at=utc(2024, 2, 1))
        declined = service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("5.00"),
                                              initiated_at=utc(2024, 2, 2))
        service.create_transaction("card", billing_cycle_id=cycle.id, amount_usd=Decimal("5.00"),
                                   initiated_at=utc(2024, 2, 3))
        service.start_processing(paid.id)
        service.complete(paid.id, completed_at=utc(2024, 2, 4))
        service.fail(declined.id, "card declined", failed_at=utc(2024, 2, 4))

        stats = service.get_statistics()

        assert stats["total_count"] == 3
        assert stats["by_status"]["COMPLETED"] == {"count": 1, "total_usd": 10.0}
        assert stats["by_status"]["FAILED"] == {"count": 1, "total_usd": 5.0}
        assert stats["by_status"]["PENDING"] == {"count": 1, "total_usd": 5.0}
        assert stats["by_status"]["CANCELLED"] == {"count": 0, "total_usd": 0.0}
        assert stats["total_amount_usd"] == 20.0
        assert stats["average_amount_usd"] == 6.67
        assert stats["success_rate"] == 33.33
        assert service.get_count_by_status("failed") == 1

        window = service.get_statistics(start_date=utc(2024, 2, 2), end_date=utc(2024, 2, 2, 23))
        assert window["total_count"] == 1
        assert window["success_rate"] == 0.0

        empty = service.get_statistics(start_date=utc(2025, 1, 1))
        assert empty["total_count"] == 0
        assert empty["average_amount_usd"] == 0.0
