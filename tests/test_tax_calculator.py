"""
Tests for tax rule lookup and calculation
"""
import pytest
from decimal import Decimal
from unittest.mock import Mock

from conftest import utc
from license_billing.exceptions import InvalidValueError, InvariantViolationError
from license_billing.services.tax_calculator import TaxCalculator, normalize_country_code


class TestTaxCalculation:
    """Arithmetic only; the session is never touched"""

    def setup_method(self):
        self.calculator = TaxCalculator(Mock())

    def rule(self, rate, **kwargs):
        defaults = {"id": 1, "tax_rate": Decimal(rate), "tax_name": "VAT", "tax_type": "VAT", "country_code": "NG"}
        defaults.update(kwargs)
        return Mock(**defaults)

    def test_nigeria_vat(self):
        """7.5% on 100.00"""
        result = self.calculator.calculate_tax(Decimal("100.00"), self.rule("7.5"))

        assert result.subtotal == Decimal("100.00")
        assert result.tax_rate == Decimal("7.5")
        assert result.tax_amount == Decimal("7.50")
        assert result.total == Decimal("107.50")
        assert result.is_taxed

    def test_rounds_half_up(self):
        result = self.calculator.calculate_tax(Decimal("30.00"), self.rule("19.25"))
        assert result.tax_amount == Decimal("5.78")

    def test_no_rule_means_no_tax(self):
        result = self.calculator.calculate_tax(Decimal("100.00"), None)

        assert result.tax_amount == Decimal("0.00")
        assert result.total == Decimal("100.00")
        assert not result.is_taxed

    def test_applied_entry_converts_amount(self):
        result = self.calculator.calculate_tax(Decimal("1000.00"), self.rule("8"))
        entry = result.applied_entry(Decimal("655.957"))

        assert entry["amount_usd"] == 80.0
        assert entry["amount_local"] == 52476.56

    def test_country_code_format(self):
        assert normalize_country_code(" ng ") == "NG"
        with pytest.raises(InvalidValueError):
            normalize_country_code("N1")


class TestTaxRuleLookup:

    def test_effective_window(self, db_session):
        calculator = TaxCalculator(db_session)
        calculator.create_rule("NG", "VAT", "VAT 5%", Decimal("5"),
                               effective_date=utc(2020, 1, 1), expiry_date=utc(2024, 1, 1))
        calculator.create_rule("NG", "VAT", "VAT 7.5%", Decimal("7.5"), effective_date=utc(2024, 1, 1))

        assert calculator.find_applicable_rule("NG", reference_date=utc(2023, 6, 1)).tax_name == "VAT 5%"
        assert calculator.find_applicable_rule("NG", reference_date=utc(2024, 1, 1)).tax_name == "VAT 7.5%"
        assert calculator.find_applicable_rule("NG", reference_date=utc(2019, 1, 1)) is None

    def test_most_recent_effective_wins(self, db_session):
        calculator = TaxCalculator(db_session)
        calculator.create_rule("GB", "VAT", "Old", Decimal("17.5"), effective_date=utc(2010, 1, 1))
        calculator.create_rule("GB", "VAT", "New", Decimal("20"), effective_date=utc(2011, 1, 4))

        assert calculator.find_applicable_rule("gb", tax_type="vat", reference_date=utc(2024, 1, 1)).tax_name == "New"

    def test_inactive_and_other_charge_types_ignored(self, db_session):
        calculator = TaxCalculator(db_session)
        calculator.create_rule("DE", "VAT", "Inactive", Decimal("19"), effective_date=utc(2020, 1, 1), active=False)
        calculator.create_rule("DE", "VAT", "Services", Decimal("19"), effective_date=utc(2020, 1, 1),
                               applies_to="services")

        assert calculator.find_applicable_rule("DE", reference_date=utc(2024, 1, 1)) is None
        assert calculator.find_applicable_rule("DE", applies_to="services",
                                               reference_date=utc(2024, 1, 1)).tax_name == "Services"

    def test_calculate_for_untaxed_country(self, db_session):
        result = TaxCalculator(db_session).calculate_for(Decimal("50"), None)
        assert result.tax_amount == Decimal("0.00")

    def test_create_rule_validation(self, db_session):
        calculator = TaxCalculator(db_session)
        with pytest.raises(InvalidValueError):
            calculator.create_rule("NG", "VAT", "Too high", Decimal("101"), effective_date=utc(2024, 1, 1))
        with pytest.raises(InvariantViolationError):
            calculator.create_rule("NG", "VAT", "Backwards", Decimal("5"),
                                   effective_date=utc(2024, 1, 1), expiry_date=utc(2023, 1, 1))
        assert calculator.list_rules() == []

    def test_rate_beyond_two_decimals_rejected(self, db_session):
        calculator = TaxCalculator(db_session)
        with pytest.raises(InvalidValueError):
            calculator.create_rule("NG", "VAT", "VAT 7.125%", Decimal("7.125"), effective_date=utc(2024, 1, 1))

        rule = calculator.create_rule("NG", "VAT", "VAT 7.13%", Decimal("7.130"), effective_date=utc(2024, 1, 1))
        assert rule.tax_rate == Decimal("7.13")
