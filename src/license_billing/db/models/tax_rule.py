"""
Tax rule model: flat-rate tax by country, type and charge category
"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, Index, Boolean, CheckConstraint
from datetime import datetime

from ..base import Base, isoformat_or_none as _iso, float_or_none as _num
from ...timeutils import utcnow, as_utc


class TaxRule(Base):
    """
    Flat tax rate valid for effective_date <= t < expiry_date

    tax_rate is a percentage (7.5 means 7.5%).
    """
    __tablename__ = "tax_rules"

    id = Column(Integer, primary_key=True, index=True)
    country_code = Column(String(3), nullable=False, index=True)
    tax_type = Column(String(30), nullable=False)  # VAT, GST, SALES_TAX
    tax_name = Column(String(100), nullable=False)
    tax_rate = Column(Numeric(5, 2), nullable=False)
    applies_to = Column(String(50), nullable=False, default="license_fee")
    required_tax_number = Column(Boolean, nullable=False, default=False)
    effective_date = Column(DateTime(timezone=True), nullable=False)
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("tax_rate >= 0 AND tax_rate <= 100", name="ck_tax_rules_rate_range"),
        Index("idx_tax_rules_lookup", "country_code", "tax_type", "applies_to", "active"),
    )

    def __repr__(self):
        return f"<TaxRule({self.country_code} {self.tax_type} {self.tax_rate}%)>"

    def is_effective(self, reference_date: datetime) -> bool:
        ref = as_utc(reference_date)
        if not self.active or as_utc(self.effective_date) > ref:
            return False
        return self.expiry_date is None or ref < as_utc(self.expiry_date)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "country_code": self.country_code,
            "tax_type": self.tax_type,
            "tax_name": self.tax_name,
            "tax_rate": _num(self.tax_rate),
            "applies_to": self.applies_to,
            "required_tax_number": self.required_tax_number,
            "effective_date": _iso(self.effective_date),
            "expiry_date": _iso(self.expiry_date),
            "active": self.active,
        }
