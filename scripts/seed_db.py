#!/usr/bin/env python
"""
Database seeding script
Populates tax rules and a demo license for development/testing
"""
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from license_billing.db import SessionLocal, License, TaxRule
from license_billing.services.license_service import LicenseService
from license_billing.services.tax_calculator import TaxCalculator
from license_billing.timeutils import add_months, utcnow

TAX_RULES = [
    # country, type, name, rate
    ("CM", "VAT", "Cameroon VAT", Decimal("19.25")),
    ("NG", "VAT", "Nigeria VAT", Decimal("7.50")),
    ("GB", "VAT", "UK VAT", Decimal("20.00")),
    ("DE", "VAT", "Germany VAT", Decimal("19.00")),
]


def seed_database():
    """Seed database with initial data"""
    db = SessionLocal()

    try:
        existing_rules = db.query(TaxRule).count()
        existing_licenses = db.query(License).count()
        if existing_rules or existing_licenses:
            print(f"Database already contains {existing_rules} tax rules and "
                  f"{existing_licenses} licenses. Skipping seed.")
            return

        print("Seeding database with initial data...")

        calculator = TaxCalculator(db)
        effective = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for country, tax_type, name, rate in TAX_RULES:
            calculator.create_rule(country, tax_type, name, rate, effective_date=effective)

        start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        license = LicenseService(db).create_license({
            "tenant_id": 1,
            "license_type": "standard",
            "billing_cycle_months": 1,
            "base_price_usd": Decimal("3.00"),
            "minimum_seats": 5,
            "billing_currency_code": "XAF",
            "billing_country_code": "CM",
            "current_period_start": start,
            "current_period_end": add_months(start, 1),
            "initial_seats": 12,
        })

        print("Database seeded successfully")
        print(f"  Created tax rules: {', '.join(country for country, *_ in TAX_RULES)}")
        print(f"  Created license: id={license.id} guid={license.guid} "
              f"seats={license.total_seats_purchased} currency={license.billing_currency_code}")

    except Exception as e:
        print(f"Error seeding database: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_database()
