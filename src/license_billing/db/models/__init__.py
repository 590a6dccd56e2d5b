"""
Database models
"""
from .license import License, LicenseSeat, LicenseStatus, BILLING_CYCLE_MONTHS
from .billing_cycle import BillingCycle, BillingStatus, CYCLE_MONEY_FIELDS
from .license_adjustment import LicenseAdjustment, AdjustmentPaymentStatus, ADJUSTMENT_MONEY_FIELDS
from .payment_transaction import PaymentTransaction, TransactionStatus
from .tax_rule import TaxRule

__all__ = [
    "License",
    "LicenseSeat",
    "LicenseStatus",
    "BILLING_CYCLE_MONTHS",
    "BillingCycle",
    "BillingStatus",
    "CYCLE_MONEY_FIELDS",
    "LicenseAdjustment",
    "AdjustmentPaymentStatus",
    "ADJUSTMENT_MONEY_FIELDS",
    "PaymentTransaction",
    "TransactionStatus",
    "TaxRule",
]
