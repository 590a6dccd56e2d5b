"""
Database module for the license billing engine
"""
from .engine import engine, SessionLocal, get_db
from .base import Base
from .models import (
    License,
    LicenseSeat,
    BillingCycle,
    LicenseAdjustment,
    PaymentTransaction,
    TaxRule,
)

__all__ = [
    "engine",
    "SessionLocal",
    "get_db",
    "Base",
    "License",
    "LicenseSeat",
    "BillingCycle",
    "LicenseAdjustment",
    "PaymentTransaction",
    "TaxRule",
]
