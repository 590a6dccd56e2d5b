"""
License adjustment model: a mid-cycle seat increase billed on its own
"""
from sqlalchemy import BigInteger, Column, Integer, String, Numeric, DateTime, ForeignKey, Index, Boolean
from sqlalchemy.orm import relationship
import enum

from ..base import Base, JSONType, isoformat_or_none as _iso, float_or_none as _num
from ...timeutils import utcnow


class AdjustmentPaymentStatus(str, enum.Enum):
    """Adjustment payment status enum"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


ADJUSTMENT_MONEY_FIELDS = (
    ("subtotal_usd", "subtotal_local"),
    ("tax_amount_usd", "tax_amount_local"),
    ("total_amount_usd", "total_amount_local"),
)


class LicenseAdjustment(Base):
    """
    Prorated seat increase

    Numeric fields are fixed at creation; only the payment fields change
    afterwards.
    """
    __tablename__ = "license_adjustments"

    id = Column(Integer, primary_key=True, index=True)
    guid = Column(BigInteger, unique=True, nullable=False, index=True)
    license_id = Column(Integer, ForeignKey("licenses.id", ondelete="RESTRICT"), nullable=False, index=True)

    adjustment_date = Column(DateTime(timezone=True), nullable=False)
    employees_added_count = Column(Integer, nullable=False)
    months_remaining = Column(Numeric(6, 2), nullable=False)
    price_per_employee_usd = Column(Numeric(12, 2), nullable=False)

    subtotal_usd = Column(Numeric(12, 2), nullable=False)  # employees x months x price
    tax_amount_usd = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount_usd = Column(Numeric(12, 2), nullable=False)

    subtotal_local = Column(Numeric(18, 2), nullable=False)
    tax_amount_local = Column(Numeric(18, 2), nullable=False, default=0)
    total_amount_local = Column(Numeric(18, 2), nullable=False)

    billing_currency_code = Column(String(3), nullable=False, default="USD")
    exchange_rate_used = Column(Numeric(18, 6), nullable=False, default=1)
    tax_rules_applied = Column(JSONType, nullable=False, default=list)

    payment_status = Column(String(20), default=AdjustmentPaymentStatus.PENDING.value, nullable=False, index=True)
    payment_due_immediately = Column(Boolean, nullable=False, default=True)
    invoice_sent_at = Column(DateTime(timezone=True), nullable=True)
    payment_completed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)

    license = relationship("License", back_populates="adjustments")
    transactions = relationship(
        "PaymentTransaction",
        back_populates="adjustment",
        order_by="PaymentTransaction.id",
        passive_deletes="all",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_license_adjustments_currency_status", "billing_currency_code", "payment_status"),
    )

    def __repr__(self):
        return (
            f"<LicenseAdjustment(id={self.id}, license={self.license_id}, "
            f"added={self.employees_added_count}, status={self.payment_status})>"
        )

    @property
    def is_settled(self) -> bool:
        return self.payment_status in (
            AdjustmentPaymentStatus.COMPLETED.value,
            AdjustmentPaymentStatus.CANCELLED.value,
            AdjustmentPaymentStatus.REFUNDED.value,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "guid": self.guid,
            "license_id": self.license_id,
            "adjustment_date": _iso(self.adjustment_date),
            "employees_added_count": self.employees_added_count,
            "months_remaining": _num(self.months_remaining),
            "price_per_employee_usd": _num(self.price_per_employee_usd),
            "billing_currency_code": self.billing_currency_code,
            "exchange_rate_used": _num(self.exchange_rate_used),
            "tax_rules_applied": self.tax_rules_applied or [],
            "payment_status": self.payment_status,
            "payment_due_immediately": self.payment_due_immediately,
            "invoice_sent_at": _iso(self.invoice_sent_at),
            "payment_completed_at": _iso(self.payment_completed_at),
            "version": self.version,
            "created_at": _iso(self.created_at),
        }
        for usd_field, local_field in ADJUSTMENT_MONEY_FIELDS:
            data[usd_field] = _num(getattr(self, usd_field))
            data[local_field] = _num(getattr(self, local_field))
        return data
