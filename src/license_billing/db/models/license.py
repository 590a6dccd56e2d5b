"""
License models: the tenant subscription and its seat ledger
"""
from sqlalchemy import Column, Integer, BigInteger, String, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
import enum

from ..base import Base
from ...timeutils import utcnow, as_utc


BILLING_CYCLE_MONTHS = (1, 3, 6, 12)


class LicenseStatus(str, enum.Enum):
    """License status enum"""
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"
    EXPIRED = "EXPIRED"


class License(Base):
    """
    A tenant's subscription governing billing cadence and seat pricing

    ``total_seats_purchased`` is not a column. It is the sum of the
    ``license_seats`` ledger and is loaded by
    ``LicenseService.refresh_aggregates``; until then it reads as 0.
    """
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True, index=True)
    guid = Column(BigInteger, unique=True, nullable=False, index=True)  # opaque external id

    tenant_id = Column(Integer, nullable=False, index=True)
    license_type = Column(String(50), nullable=False)

    # Pricing
    billing_cycle_months = Column(Integer, nullable=False, default=1)
    base_price_usd = Column(Numeric(12, 2), nullable=False, default=Decimal("3.00"))
    minimum_seats = Column(Integer, nullable=False, default=5)
    billing_currency_code = Column(String(3), nullable=False, default="USD")
    billing_country_code = Column(String(3), nullable=True)  # drives tax lookup

    # Renewal window
    current_period_start = Column(DateTime(timezone=True), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)
    next_renewal_date = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(20), default=LicenseStatus.ACTIVE.value, nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic concurrency token
    version = Column(Integer, nullable=False)

    seats = relationship("LicenseSeat", back_populates="license", passive_deletes="all")
    billing_cycles = relationship("BillingCycle", back_populates="license", passive_deletes="all")
    adjustments = relationship("LicenseAdjustment", back_populates="license", passive_deletes="all")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_licenses_tenant_status", "tenant_id", "status"),
        Index("idx_licenses_period_end", "current_period_end"),
    )

    def __repr__(self):
        return f"<License(guid={self.guid}, tenant={self.tenant_id}, status={self.status})>"

    # Store-computed aggregates (see LicenseService.refresh_aggregates)

    @property
    def total_seats_purchased(self) -> int:
        return getattr(self, "_total_seats_snapshot", 0)

    @property
    def billing_status(self) -> Optional[str]:
        """Status of the latest billing cycle, if any"""
        return getattr(self, "_billing_status_snapshot", None)

    def load_aggregates(self, total_seats: int, billing_status: Optional[str]) -> None:
        self._total_seats_snapshot = int(total_seats or 0)
        self._billing_status_snapshot = billing_status

    # Business helpers - pure functions of loaded state

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now) or utcnow()
        return now > as_utc(self.current_period_end)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status == LicenseStatus.ACTIVE.value and not self.is_expired(now)

    def is_expiring_soon(self, days: int = 30, now: Optional[datetime] = None) -> bool:
        """Active and the current period ends within ``days``"""
        now = as_utc(now) or utcnow()
        if not self.is_active(now):
            return False
        return as_utc(self.current_period_end) <= now + timedelta(days=days)

    def billable_seats(self) -> int:
        return max(self.total_seats_purchased, self.minimum_seats or 0)

    def calculate_monthly_price(self) -> Decimal:
        return Decimal(str(self.base_price_usd)) * self.billable_seats()

    def calculate_period_price(self) -> Decimal:
        return self.calculate_monthly_price() * self.billing_cycle_months

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "guid": self.guid,
            "tenant_id": self.tenant_id,
            "license_type": self.license_type,
            "billing_cycle_months": self.billing_cycle_months,
            "base_price_usd": float(self.base_price_usd) if self.base_price_usd is not None else None,
            "minimum_seats": self.minimum_seats,
            "billing_currency_code": self.billing_currency_code,
            "billing_country_code": self.billing_country_code,
            "current_period_start": as_utc(self.current_period_start).isoformat(),
            "current_period_end": as_utc(self.current_period_end).isoformat(),
            "next_renewal_date": as_utc(self.next_renewal_date).isoformat(),
            "status": self.status,
            "total_seats_purchased": self.total_seats_purchased,
            "billing_status": self.billing_status,
            "monthly_price_usd": float(self.calculate_monthly_price()),
            "period_price_usd": float(self.calculate_period_price()),
            "is_active": self.is_active(),
            "version": self.version,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "updated_at": as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }


class LicenseSeat(Base):
    """
    Seat ledger entry

    Append-only. The license's seat total is the sum of ``seat_count``.
    """
    __tablename__ = "license_seats"

    id = Column(Integer, primary_key=True, index=True)
    license_id = Column(Integer, ForeignKey("licenses.id", ondelete="RESTRICT"), nullable=False, index=True)
    adjustment_id = Column(Integer, ForeignKey("license_adjustments.id", ondelete="RESTRICT"), nullable=True)
    seat_count = Column(Integer, nullable=False)
    source = Column(String(30), nullable=False, default="manual")  # initial, adjustment, manual
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    license = relationship("License", back_populates="seats")

    def __repr__(self):
        return f"<LicenseSeat(license={self.license_id}, seats={self.seat_count}, source={self.source})>"
