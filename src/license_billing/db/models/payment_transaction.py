"""
Payment transaction model: one attempt to settle a cycle or an adjustment
"""
from sqlalchemy import BigInteger, Column, Integer, String, Numeric, DateTime, ForeignKey, Index, Text, CheckConstraint
from sqlalchemy.orm import relationship
import enum

from ..base import Base, JSONType, isoformat_or_none as _iso, float_or_none as _num
from ...timeutils import utcnow


class TransactionStatus(str, enum.Enum):
    """Payment transaction status enum"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentTransaction(Base):
    """
    Payment attempt

    Append-only log per parent; references exactly one of billing_cycle_id
    or adjustment_id.
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    guid = Column(BigInteger, unique=True, nullable=False, index=True)

    billing_cycle_id = Column(Integer, ForeignKey("billing_cycles.id", ondelete="RESTRICT"), nullable=True, index=True)
    adjustment_id = Column(Integer, ForeignKey("license_adjustments.id", ondelete="RESTRICT"), nullable=True, index=True)

    payment_method = Column(String(30), nullable=False)  # card, bank_transfer, mobile_money
    payment_reference = Column(String(100), unique=True, nullable=False, index=True)

    amount_usd = Column(Numeric(12, 2), nullable=False)
    amount_local = Column(Numeric(18, 2), nullable=False)
    exchange_rate_used = Column(Numeric(18, 6), nullable=False)
    currency_code = Column(String(3), nullable=False)

    transaction_status = Column(String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True)
    initiated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)

    gateway_response = Column(JSONType, nullable=True)  # opaque provider payload

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)

    billing_cycle = relationship("BillingCycle", back_populates="transactions")
    adjustment = relationship("LicenseAdjustment", back_populates="transactions")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "(billing_cycle_id IS NULL) <> (adjustment_id IS NULL)",
            name="ck_payment_transactions_single_parent",
        ),
        Index("idx_payment_transactions_status_initiated", "transaction_status", "initiated_at"),
    )

    def __repr__(self):
        return f"<PaymentTransaction(ref={self.payment_reference}, status={self.transaction_status})>"

    @property
    def parent(self):
        return self.billing_cycle if self.billing_cycle_id is not None else self.adjustment

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "guid": self.guid,
            "billing_cycle_id": self.billing_cycle_id,
            "adjustment_id": self.adjustment_id,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "amount_usd": _num(self.amount_usd),
            "amount_local": _num(self.amount_local),
            "exchange_rate_used": _num(self.exchange_rate_used),
            "currency_code": self.currency_code,
            "transaction_status": self.transaction_status,
            "initiated_at": _iso(self.initiated_at),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
            "failure_reason": self.failure_reason,
            "gateway_response": self.gateway_response,
            "version": self.version,
        }
