"""
Payment transaction service

Each transaction is one attempt to settle a billing cycle or a license
adjustment. A parent may be paid in several parts; the completion that
brings the completed amount up to the parent total settles it in the same
commit, and no completion may push the paid amount past that total.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import config
from ..db.models.billing_cycle import BillingCycle
from ..db.models.license_adjustment import LicenseAdjustment, AdjustmentPaymentStatus
from ..db.models.payment_transaction import PaymentTransaction, TransactionStatus
from ..exceptions import (
    IllegalTransitionError,
    InvalidValueError,
    InvariantViolationError,
    MissingFieldError,
    NotFoundError,
)
from ..timeutils import as_utc, utcnow
from .billing_cycle_service import CYCLE_MACHINE, settle_cycle
from .currency_math import (
    ensure_base_currency_rate,
    ensure_consistent,
    normalize_currency_code,
    round_currency,
    to_decimal,
    to_local,
)
from .identifiers import generate_guid, generate_payment_reference
from .license_adjustment_service import settle_adjustment
from .state_machine import StatusMachine, apply_transition, commit_or_raise

logger = logging.getLogger(__name__)


PAYMENT_MACHINE = StatusMachine(
    "payment transaction",
    TransactionStatus,
    {
        TransactionStatus.PENDING: {TransactionStatus.PROCESSING, TransactionStatus.FAILED, TransactionStatus.CANCELLED},
        TransactionStatus.PROCESSING: {
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        },
        TransactionStatus.COMPLETED: set(),
        TransactionStatus.FAILED: set(),
        TransactionStatus.CANCELLED: set(),
    },
)

UPDATABLE_FIELDS = (
    "payment_method",
    "amount_usd",
    "amount_local",
    "exchange_rate_used",
    "currency_code",
    "gateway_response",
)

_DATE_FIELDS = ("initiated_at", "completed_at", "failed_at")
_AMOUNT_FIELDS = {"usd": PaymentTransaction.amount_usd, "local": PaymentTransaction.amount_local}

# Adjustment states a payment can still settle (PENDING passes through PROCESSING)
_SETTLEABLE_ADJUSTMENT = (AdjustmentPaymentStatus.PENDING.value, AdjustmentPaymentStatus.PROCESSING.value)


def payment_machine() -> StatusMachine:
    """Transition table in effect, FAILED -> PENDING only when retries are enabled"""
    if config.PAYMENT_ALLOW_FAILED_RETRY:
        return PAYMENT_MACHINE.with_transitions({TransactionStatus.FAILED: {TransactionStatus.PENDING}})
    return PAYMENT_MACHINE


def validate_transaction(values: Dict[str, Any]) -> None:
    for field in ("payment_method", "payment_reference", "amount_usd", "amount_local",
                  "exchange_rate_used", "currency_code"):
        if values.get(field) in (None, ""):
            raise MissingFieldError(field, "payment transaction")

    amount_usd = to_decimal(values["amount_usd"], "amount_usd")
    if amount_usd <= 0:
        raise InvalidValueError("amount_usd must be positive", {"field": "amount_usd"})
    rate = to_decimal(values["exchange_rate_used"], "exchange_rate_used")
    if rate <= 0:
        raise InvalidValueError("exchange_rate_used must be positive", {"field": "exchange_rate_used"})

    currency = normalize_currency_code(values["currency_code"])
    ensure_base_currency_rate(currency, rate)
    ensure_consistent(amount_usd, to_decimal(values["amount_local"], "amount_local"), rate, "amount_local")

    status = values.get("transaction_status") or TransactionStatus.PENDING.value
    initiated_at = as_utc(values.get("initiated_at"))
    if status == TransactionStatus.FAILED.value:
        reason = values.get("failure_reason")
        if not reason or not str(reason).strip():
            raise InvariantViolationError("failure_reason is required for a FAILED transaction",
                                          {"field": "failure_reason"})
        failed_at = as_utc(values.get("failed_at"))
        if failed_at is None:
            raise InvariantViolationError("failed_at is required for a FAILED transaction",
                                          {"field": "failed_at"})
        if initiated_at is not None and failed_at < initiated_at:
            raise InvariantViolationError("failed_at must not precede initiated_at", {"field": "failed_at"})
    if status == TransactionStatus.COMPLETED.value:
        completed_at = as_utc(values.get("completed_at"))
        if completed_at is None:
            raise InvariantViolationError("completed_at is required for a COMPLETED transaction",
                                          {"field": "completed_at"})
        if initiated_at is not None and completed_at < initiated_at:
            raise InvariantViolationError("completed_at must not precede initiated_at",
                                          {"field": "completed_at"})


def _describe(parent) -> str:
    if isinstance(parent, BillingCycle):
        return f"billing cycle {parent.id}"
    return f"license adjustment {parent.id}"


def _ensure_parent_payable(parent) -> None:
    """Raise unless a completed payment could settle this parent"""
    if isinstance(parent, BillingCycle):
        if not CYCLE_MACHINE.can_transition(parent.billing_status, "COMPLETED"):
            raise IllegalTransitionError(
                f"Billing cycle {parent.id} is {parent.billing_status} and cannot take a payment",
                current=parent.billing_status,
            )
    elif parent.payment_status not in _SETTLEABLE_ADJUSTMENT:
        raise IllegalTransitionError(
            f"License adjustment {parent.id} is {parent.payment_status} and cannot take a payment",
            current=parent.payment_status,
        )


class PaymentTransactionService:
    """Service for payment attempts against cycles and adjustments"""

    def __init__(self, db: Session):
        self.db = db

    @property
    def machine(self) -> StatusMachine:
        return payment_machine()

    def get_transaction(self, transaction_id: int) -> Optional[PaymentTransaction]:
        return self.db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id).first()

    def require_transaction(self, transaction_id: int) -> PaymentTransaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError("PaymentTransaction", transaction_id)
        return transaction

    def get_by_guid(self, guid: int) -> PaymentTransaction:
        transaction = self.db.query(PaymentTransaction).filter(PaymentTransaction.guid == guid).first()
        if not transaction:
            raise NotFoundError("PaymentTransaction", f"guid={guid}")
        return transaction

    def get_by_reference(self, payment_reference: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.payment_reference == payment_reference)
            .first()
        )

    def get_amount_paid(
        self,
        billing_cycle_id: Optional[int] = None,
        adjustment_id: Optional[int] = None,
        exclude_id: Optional[int] = None,
    ) -> Decimal:
        """USD already collected by COMPLETED transactions for one parent"""
        query = self.db.query(func.coalesce(func.sum(PaymentTransaction.amount_usd), 0)).filter(
            PaymentTransaction.transaction_status == TransactionStatus.COMPLETED.value
        )
        if billing_cycle_id is not None:
            query = query.filter(PaymentTransaction.billing_cycle_id == billing_cycle_id)
        else:
            query = query.filter(PaymentTransaction.adjustment_id == adjustment_id)
        if exclude_id is not None:
            query = query.filter(PaymentTransaction.id != exclude_id)
        return round_currency(Decimal(str(query.scalar())))

    def _load_parent(self, billing_cycle_id: Optional[int], adjustment_id: Optional[int]):
        if (billing_cycle_id is None) == (adjustment_id is None):
            raise InvalidValueError("Exactly one of billing_cycle_id or adjustment_id is required")
        if billing_cycle_id is not None:
            parent = self.db.query(BillingCycle).filter(BillingCycle.id == billing_cycle_id).first()
            if not parent:
                raise NotFoundError("BillingCycle", billing_cycle_id)
        else:
            parent = self.db.query(LicenseAdjustment).filter(LicenseAdjustment.id == adjustment_id).first()
            if not parent:
                raise NotFoundError("LicenseAdjustment", adjustment_id)
        return parent

    def create_transaction(
        self,
        payment_method: str,
        billing_cycle_id: Optional[int] = None,
        adjustment_id: Optional[int] = None,
        amount_usd: Optional[Decimal] = None,
        amount_local: Optional[Decimal] = None,
        exchange_rate_used: Optional[Decimal] = None,
        currency_code: Optional[str] = None,
        payment_reference: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
        initiated_at: Optional[datetime] = None,
    ) -> PaymentTransaction:
        """
        Open a PENDING payment attempt

        Rate and currency default to the parent's; amount_usd defaults to
        what is still outstanding on the parent. An explicit amount_local is
        kept but must agree with amount_usd x rate. Asking for more than is
        outstanding is rejected.
        """
        parent = self._load_parent(billing_cycle_id, adjustment_id)
        _ensure_parent_payable(parent)

        paid = self.get_amount_paid(billing_cycle_id, adjustment_id)
        outstanding = round_currency(Decimal(str(parent.total_amount_usd))) - paid
        if outstanding <= 0:
            raise InvariantViolationError(f"Nothing is outstanding on {_describe(parent)}",
                                          {"field": "amount_usd"})

        rate = to_decimal(exchange_rate_used, "exchange_rate_used")
        if rate is None:
            rate = Decimal(str(parent.exchange_rate_used))
        usd = to_decimal(amount_usd, "amount_usd")
        if usd is None:
            usd = outstanding
        elif usd - outstanding > config.AMOUNT_TOLERANCE:
            raise InvariantViolationError(
                f"amount_usd {usd} exceeds the {outstanding} USD outstanding on {_describe(parent)}",
                {"field": "amount_usd", "outstanding_usd": float(outstanding)},
            )
        local = to_decimal(amount_local, "amount_local")
        if local is None:
            if amount_usd is None and exchange_rate_used is None and paid == 0 \
                    and parent.total_amount_local is not None:
                local = Decimal(str(parent.total_amount_local))
            else:
                local = to_local(usd, rate)

        reference = payment_reference or generate_payment_reference()
        if self.get_by_reference(reference):
            raise InvariantViolationError(f"payment_reference {reference} is already in use",
                                          {"field": "payment_reference"})

        values = {
            "billing_cycle_id": billing_cycle_id,
            "adjustment_id": adjustment_id,
            "payment_method": payment_method,
            "payment_reference": reference,
            "amount_usd": round_currency(usd),
            "amount_local": round_currency(local),
            "exchange_rate_used": rate,
            "currency_code": normalize_currency_code(currency_code or parent.billing_currency_code),
            "transaction_status": TransactionStatus.PENDING.value,
            "initiated_at": as_utc(initiated_at) or utcnow(),
            "gateway_response": gateway_response,
        }
        validate_transaction(values)

        transaction = PaymentTransaction(guid=generate_guid(self.db, PaymentTransaction), **values)
        self.db.add(transaction)
        commit_or_raise(self.db, transaction, "create payment transaction")

        logger.info(
            f"Created payment transaction {transaction.payment_reference} for "
            f"{'cycle ' + str(billing_cycle_id) if billing_cycle_id else 'adjustment ' + str(adjustment_id)}: "
            f"{transaction.amount_usd} USD / {transaction.amount_local} {transaction.currency_code}"
        )
        return transaction

    def update_transaction(self, transaction_id: int, changes: Dict[str, Any]) -> PaymentTransaction:
        """Amend a PENDING attempt; amount_local is re-derived unless supplied"""
        transaction = self.require_transaction(transaction_id)
        if transaction.transaction_status != TransactionStatus.PENDING.value:
            raise IllegalTransitionError(
                f"Only PENDING transactions can be edited (current: {transaction.transaction_status})",
                current=transaction.transaction_status,
            )

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise InvalidValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        values = {column: getattr(transaction, column) for column in (
            "payment_method", "payment_reference", "amount_usd", "amount_local", "exchange_rate_used",
            "currency_code", "transaction_status", "initiated_at", "gateway_response",
        )}
        values.update(changes)
        if "amount_local" not in changes and ("amount_usd" in changes or "exchange_rate_used" in changes):
            values["amount_local"] = to_local(
                to_decimal(values["amount_usd"], "amount_usd"),
                to_decimal(values["exchange_rate_used"], "exchange_rate_used"),
            )
        validate_transaction(values)

        for field in UPDATABLE_FIELDS:
            if field in values:
                setattr(transaction, field, values[field])
        transaction.currency_code = normalize_currency_code(values["currency_code"])
        return commit_or_raise(self.db, transaction, f"update payment transaction {transaction_id}")

    # Lifecycle

    def start_processing(self, transaction_id: int) -> PaymentTransaction:
        transaction = self.require_transaction(transaction_id)
        return apply_transition(self.db, transaction, self.machine, TransactionStatus.PROCESSING,
                                status_attr="transaction_status")

    def complete(
        self,
        transaction_id: int,
        completed_at: Optional[datetime] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        """
        Mark the attempt COMPLETED

        The cycle or adjustment is settled only once the completed amounts
        for it reach its total; a smaller payment leaves it open.
        """
        transaction = self.require_transaction(transaction_id)
        stamp = as_utc(completed_at) or utcnow()
        totals: Dict[str, Decimal] = {}

        def chronological_and_payable(entity: PaymentTransaction) -> None:
            if stamp < as_utc(entity.initiated_at):
                raise InvariantViolationError("completed_at must not precede initiated_at",
                                              {"field": "completed_at"})
            parent = entity.parent
            _ensure_parent_payable(parent)
            paid = self.get_amount_paid(entity.billing_cycle_id, entity.adjustment_id, exclude_id=entity.id)
            totals["paid"] = paid + Decimal(str(entity.amount_usd))
            totals["due"] = round_currency(Decimal(str(parent.total_amount_usd)))
            if totals["paid"] - totals["due"] > config.AMOUNT_TOLERANCE:
                raise InvariantViolationError(
                    f"Completing {entity.payment_reference} would collect {totals['paid']} USD "
                    f"against {totals['due']} USD due on {_describe(parent)}",
                    {"field": "amount_usd", "outstanding_usd": float(totals["due"] - paid)},
                )

        def settle(entity: PaymentTransaction) -> None:
            entity.completed_at = stamp
            if gateway_response is not None:
                entity.gateway_response = gateway_response
            if totals["due"] - totals["paid"] > config.AMOUNT_TOLERANCE:
                return
            if entity.billing_cycle_id is not None:
                settle_cycle(entity.billing_cycle, stamp)
            else:
                settle_adjustment(entity.adjustment, stamp)

        transaction = apply_transition(self.db, transaction, self.machine, TransactionStatus.COMPLETED,
                                       status_attr="transaction_status",
                                       guard=chronological_and_payable, mutate=settle)
        if totals["due"] - totals["paid"] > config.AMOUNT_TOLERANCE:
            logger.info(
                f"Payment {transaction.payment_reference} completed; "
                f"{totals['paid']} of {totals['due']} USD collected, parent left open"
            )
        else:
            logger.info(f"Payment {transaction.payment_reference} completed; parent settled")
        return transaction

    def fail(
        self,
        transaction_id: int,
        failure_reason: str,
        failed_at: Optional[datetime] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        transaction = self.require_transaction(transaction_id)
        stamp = as_utc(failed_at) or utcnow()

        def has_reason(entity: PaymentTransaction) -> None:
            if not failure_reason or not failure_reason.strip():
                raise InvariantViolationError("failure_reason is required to fail a transaction",
                                              {"field": "failure_reason"})
            if stamp < as_utc(entity.initiated_at):
                raise InvariantViolationError("failed_at must not precede initiated_at", {"field": "failed_at"})

        def record_failure(entity: PaymentTransaction) -> None:
            entity.failed_at = stamp
            entity.failure_reason = failure_reason.strip()
            if gateway_response is not None:
                entity.gateway_response = gateway_response

        transaction = apply_transition(self.db, transaction, self.machine, TransactionStatus.FAILED,
                                       status_attr="transaction_status",
                                       guard=has_reason, mutate=record_failure)
        logger.warning(f"Payment {transaction.payment_reference} failed: {transaction.failure_reason}")
        return transaction

    def cancel(self, transaction_id: int, reason: Optional[str] = None) -> PaymentTransaction:
        transaction = self.require_transaction(transaction_id)

        def record_reason(entity: PaymentTransaction) -> None:
            if reason:
                entity.failure_reason = reason

        return apply_transition(self.db, transaction, self.machine, TransactionStatus.CANCELLED,
                                status_attr="transaction_status", mutate=record_reason)

    def retry(self, transaction_id: int, now: Optional[datetime] = None) -> PaymentTransaction:
        """
        Reopen a FAILED attempt as PENDING under a fresh reference

        Only possible when PAYMENT_ALLOW_FAILED_RETRY is enabled; otherwise
        FAILED is terminal and a new transaction has to be created.
        """
        transaction = self.require_transaction(transaction_id)
        stamp = as_utc(now) or utcnow()

        def parent_still_open(entity: PaymentTransaction) -> None:
            _ensure_parent_payable(entity.parent)

        def reopen(entity: PaymentTransaction) -> None:
            entity.payment_reference = generate_payment_reference()
            entity.initiated_at = stamp
            entity.failed_at = None
            entity.failure_reason = None

        return apply_transition(self.db, transaction, self.machine, TransactionStatus.PENDING,
                                status_attr="transaction_status", guard=parent_still_open, mutate=reopen)

    # Queries

    def list_transactions(
        self,
        billing_cycle_id: Optional[int] = None,
        adjustment_id: Optional[int] = None,
        status: Optional[str] = None,
        currency: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        date_field: str = "initiated_at",
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        amount_field: str = "usd",
        limit: int = 50,
        offset: int = 0,
    ) -> List[PaymentTransaction]:
        """
        Filtered listing, newest first

        Args:
            date_field: Timestamp the date range applies to
                (initiated_at, completed_at or failed_at)
            amount_field: Amount the range applies to (usd or local)
        """
        if date_field not in _DATE_FIELDS:
            raise InvalidValueError(f"date_field must be one of {', '.join(_DATE_FIELDS)}",
                                    {"field": "date_field"})
        if amount_field not in _AMOUNT_FIELDS:
            raise InvalidValueError(f"amount_field must be one of {', '.join(_AMOUNT_FIELDS)}",
                                    {"field": "amount_field"})

        query = self.db.query(PaymentTransaction)
        if billing_cycle_id is not None:
            query = query.filter(PaymentTransaction.billing_cycle_id == billing_cycle_id)
        if adjustment_id is not None:
            query = query.filter(PaymentTransaction.adjustment_id == adjustment_id)
        if status:
            query = query.filter(PaymentTransaction.transaction_status == PAYMENT_MACHINE.coerce(status))
        if currency:
            query = query.filter(PaymentTransaction.currency_code == normalize_currency_code(currency))

        stamp_column = getattr(PaymentTransaction, date_field)
        if date_from is not None:
            query = query.filter(stamp_column >= as_utc(date_from))
        if date_to is not None:
            query = query.filter(stamp_column <= as_utc(date_to))

        amount_column = _AMOUNT_FIELDS[amount_field]
        low = to_decimal(min_amount, "min_amount")
        high = to_decimal(max_amount, "max_amount")
        if low is not None:
            query = query.filter(amount_column >= low)
        if high is not None:
            query = query.filter(amount_column <= high)
        return (
            query.order_by(PaymentTransaction.initiated_at.desc(), PaymentTransaction.id.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    def get_current_transaction(
        self,
        billing_cycle_id: Optional[int] = None,
        adjustment_id: Optional[int] = None,
    ) -> Optional[PaymentTransaction]:
        """Most recent non-terminal attempt for a parent, if any"""
        self._load_parent(billing_cycle_id, adjustment_id)
        machine = self.machine
        open_statuses = [s.value for s in TransactionStatus if not machine.is_terminal(s)]

        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.transaction_status.in_(open_statuses)
        )
        if billing_cycle_id is not None:
            query = query.filter(PaymentTransaction.billing_cycle_id == billing_cycle_id)
        else:
            query = query.filter(PaymentTransaction.adjustment_id == adjustment_id)
        return query.order_by(PaymentTransaction.initiated_at.desc(), PaymentTransaction.id.desc()).first()

    def get_count_by_status(self, status: str) -> int:
        return (
            self.db.query(func.count(PaymentTransaction.id))
            .filter(PaymentTransaction.transaction_status == PAYMENT_MACHINE.coerce(status))
            .scalar()
        )

    def get_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Counts and USD totals per status, optionally bounded on initiated_at

        success_rate is the percentage of transactions that COMPLETED.
        """
        query = self.db.query(
            PaymentTransaction.transaction_status,
            func.count(PaymentTransaction.id),
            func.sum(PaymentTransaction.amount_usd),
        )
        if start_date is not None:
            query = query.filter(PaymentTransaction.initiated_at >= as_utc(start_date))
        if end_date is not None:
            query = query.filter(PaymentTransaction.initiated_at <= as_utc(end_date))
        rows = query.group_by(PaymentTransaction.transaction_status).all()

        by_status = {s.value: {"count": 0, "total_usd": 0.0} for s in TransactionStatus}
        total_count = 0
        total_usd = Decimal("0")
        for status, count, amount in rows:
            amount = round_currency(Decimal(str(amount or 0)))
            by_status[status] = {"count": int(count), "total_usd": float(amount)}
            total_count += int(count)
            total_usd += amount

        completed = by_status[TransactionStatus.COMPLETED.value]["count"]
        average = round_currency(total_usd / total_count) if total_count else Decimal("0")
        success_rate = round(completed / total_count * 100, 2) if total_count else 0.0
        return {
            "total_count": total_count,
            "by_status": by_status,
            "total_amount_usd": float(total_usd),
            "average_amount_usd": float(average),
            "success_rate": success_rate,
        }
