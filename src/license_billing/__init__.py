"""
License billing engine

Tenant licenses, recurring two-currency billing cycles, prorated seat
adjustments and the payment transactions that settle them.
"""
__version__ = "0.1.0"
