"""
Billing cycle model: one periodic two-currency invoice for a license
"""
from sqlalchemy import BigInteger, Column, Integer, String, Numeric, DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import relationship
import enum

from ..base import Base, JSONType, isoformat_or_none as _iso, float_or_none as _num
from ...timeutils import utcnow


class BillingStatus(str, enum.Enum):
    """Billing cycle status enum"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    OVERDUE = "OVERDUE"


# (usd column, local column) pairs kept in step by the calculator
CYCLE_MONEY_FIELDS = (
    ("base_amount_usd", "base_amount_local"),
    ("adjustments_amount_usd", "adjustments_amount_local"),
    ("subtotal_usd", "subtotal_local"),
    ("tax_amount_usd", "tax_amount_local"),
    ("total_amount_usd", "total_amount_local"),
)


class BillingCycle(Base):
    """
    Billing cycle for one license period

    USD is the pricing currency; local fields are USD x exchange_rate_used
    unless explicitly overridden (and still consistent within tolerance).
    """
    __tablename__ = "billing_cycles"

    id = Column(Integer, primary_key=True, index=True)
    guid = Column(BigInteger, unique=True, nullable=False, index=True)
    license_id = Column(Integer, ForeignKey("licenses.id", ondelete="RESTRICT"), nullable=False, index=True)

    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)

    base_employee_count = Column(Integer, nullable=False)
    final_employee_count = Column(Integer, nullable=False)

    # USD amounts
    base_amount_usd = Column(Numeric(12, 2), nullable=False)
    adjustments_amount_usd = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal_usd = Column(Numeric(12, 2), nullable=False)  # base + adjustments
    tax_amount_usd = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount_usd = Column(Numeric(12, 2), nullable=False)  # subtotal + tax

    # Local currency amounts
    base_amount_local = Column(Numeric(18, 2), nullable=False)
    adjustments_amount_local = Column(Numeric(18, 2), nullable=False, default=0)
    subtotal_local = Column(Numeric(18, 2), nullable=False)
    tax_amount_local = Column(Numeric(18, 2), nullable=False, default=0)
    total_amount_local = Column(Numeric(18, 2), nullable=False)

    billing_currency_code = Column(String(3), nullable=False, default="USD")  # ISO 4217
    exchange_rate_used = Column(Numeric(18, 6), nullable=False, default=1)

    # [{"rate": 7.5, "name": "VAT", "type": "VAT", "amount_usd": ..., "amount_local": ...}]
    tax_rules_applied = Column(JSONType, nullable=False, default=list)

    billing_status = Column(String(20), default=BillingStatus.PENDING.value, nullable=False, index=True)
    payment_due_date = Column(DateTime(timezone=True), nullable=False, index=True)
    invoice_generated_at = Column(DateTime(timezone=True), nullable=True)
    payment_completed_at = Column(DateTime(timezone=True), nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)

    license = relationship("License", back_populates="billing_cycles")
    transactions = relationship(
        "PaymentTransaction",
        back_populates="billing_cycle",
        order_by="PaymentTransaction.id",
        passive_deletes="all",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_billing_cycles_license_period", "license_id", "period_start"),
        Index("idx_billing_cycles_status_due", "billing_status", "payment_due_date"),
        Index("idx_billing_cycles_currency", "billing_currency_code"),
    )

    def __repr__(self):
        return f"<BillingCycle(id={self.id}, license={self.license_id}, status={self.billing_status})>"

    @property
    def is_settled(self) -> bool:
        return self.billing_status in (BillingStatus.COMPLETED.value, BillingStatus.CANCELLED.value)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "guid": self.guid,
            "license_id": self.license_id,
            "period_start": _iso(self.period_start),
            "period_end": _iso(self.period_end),
            "base_employee_count": self.base_employee_count,
            "final_employee_count": self.final_employee_count,
            "billing_currency_code": self.billing_currency_code,
            "exchange_rate_used": _num(self.exchange_rate_used),
            "tax_rules_applied": self.tax_rules_applied or [],
            "billing_status": self.billing_status,
            "payment_due_date": _iso(self.payment_due_date),
            "invoice_generated_at": _iso(self.invoice_generated_at),
            "payment_completed_at": _iso(self.payment_completed_at),
            "notes": self.notes,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        for usd_field, local_field in CYCLE_MONEY_FIELDS:
            data[usd_field] = _num(getattr(self, usd_field))
            data[local_field] = _num(getattr(self, local_field))
        return data
