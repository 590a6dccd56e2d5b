"""
Flat-rate tax lookup and calculation

Rules live in the tax_rules table keyed by country, tax type and the kind
of charge they apply to (license_fee by default). The billing flow only
reads them; create_rule exists for seeding and administration.
"""
import re
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import config
from ..db.models.tax_rule import TaxRule
from ..exceptions import InvalidValueError, InvariantViolationError, MissingFieldError
from ..timeutils import utcnow, as_utc
from .currency_math import round_currency, to_decimal, to_local
from .state_machine import commit_or_raise

logger = logging.getLogger(__name__)

_COUNTRY_CODE_RE = re.compile(r"^[A-Z]{2,3}$")
MAX_TAX_RATE = Decimal("100")


@dataclass
class TaxResult:
    """Tax calculation result"""
    subtotal: Decimal
    tax_rate: Decimal  # percentage, e.g. 7.5
    tax_amount: Decimal
    total: Decimal
    tax_name: str
    tax_type: str
    country_code: Optional[str] = None
    rule_id: Optional[int] = None

    @property
    def is_taxed(self) -> bool:
        return self.rule_id is not None

    def applied_entry(self, exchange_rate: Decimal) -> Dict[str, Any]:
        """Row for a tax_rules_applied list"""
        return {
            "rule_id": self.rule_id,
            "rate": float(self.tax_rate),
            "name": self.tax_name,
            "type": self.tax_type,
            "country_code": self.country_code,
            "amount_usd": float(self.tax_amount),
            "amount_local": float(to_local(self.tax_amount, exchange_rate)),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtotal": float(self.subtotal),
            "tax_rate": float(self.tax_rate),
            "tax_amount": float(self.tax_amount),
            "total": float(self.total),
            "tax_name": self.tax_name,
            "tax_type": self.tax_type,
            "country_code": self.country_code,
            "rule_id": self.rule_id,
        }


def normalize_country_code(code: Any) -> str:
    if not isinstance(code, str) or not _COUNTRY_CODE_RE.match(code.strip().upper()):
        raise InvalidValueError(f"Invalid country code: {code!r}", {"field": "country_code"})
    return code.strip().upper()


class TaxCalculator:
    """Tax rule lookup against the tax_rules table"""

    def __init__(self, db: Session):
        self.db = db

    def find_applicable_rule(
        self,
        country_code: str,
        tax_type: Optional[str] = None,
        applies_to: Optional[str] = None,
        reference_date: Optional[datetime] = None,
    ) -> Optional[TaxRule]:
        """
        Active rule with effective_date <= reference_date < expiry_date

        A missing expiry_date means open-ended. When several rules match,
        the one that became effective most recently wins.
        """
        country_code = normalize_country_code(country_code)
        applies_to = applies_to or config.DEFAULT_TAX_APPLIES_TO
        reference_date = as_utc(reference_date) or utcnow()

        query = self.db.query(TaxRule).filter(
            TaxRule.country_code == country_code,
            TaxRule.applies_to == applies_to,
            TaxRule.active.is_(True),
        )
        if tax_type:
            query = query.filter(TaxRule.tax_type == tax_type.upper())

        # Window checked in Python so naive/aware storage behaves the same
        candidates = [rule for rule in query.all() if rule.is_effective(reference_date)]
        if not candidates:
            logger.info(
                f"No tax rule for {country_code}/{tax_type or '*'}/{applies_to} "
                f"at {reference_date.date().isoformat()}"
            )
            return None

        candidates.sort(key=lambda rule: (as_utc(rule.effective_date), rule.id), reverse=True)
        return candidates[0]

    def calculate_tax(self, subtotal: Decimal, rule: Optional[TaxRule]) -> TaxResult:
        """Apply a rule's percentage to a subtotal; no rule means no tax"""
        subtotal = round_currency(to_decimal(subtotal, "subtotal"))
        if rule is None:
            return TaxResult(
                subtotal=subtotal,
                tax_rate=Decimal("0"),
                tax_amount=Decimal("0.00"),
                total=subtotal,
                tax_name="No Tax",
                tax_type="NONE",
            )

        rate = Decimal(str(rule.tax_rate))
        tax_amount = round_currency(subtotal * rate / Decimal("100"))
        return TaxResult(
            subtotal=subtotal,
            tax_rate=rate,
            tax_amount=tax_amount,
            total=subtotal + tax_amount,
            tax_name=rule.tax_name,
            tax_type=rule.tax_type,
            country_code=rule.country_code,
            rule_id=rule.id,
        )

    def calculate_for(
        self,
        subtotal: Decimal,
        country_code: Optional[str],
        applies_to: Optional[str] = None,
        reference_date: Optional[datetime] = None,
        tax_type: Optional[str] = None,
    ) -> TaxResult:
        """Lookup then calculate; a license without a country is untaxed"""
        rule = None
        if country_code:
            rule = self.find_applicable_rule(country_code, tax_type, applies_to, reference_date)
        return self.calculate_tax(subtotal, rule)

    def create_rule(
        self,
        country_code: str,
        tax_type: str,
        tax_name: str,
        tax_rate: Decimal,
        effective_date: datetime,
        expiry_date: Optional[datetime] = None,
        applies_to: Optional[str] = None,
        required_tax_number: bool = False,
        active: bool = True,
    ) -> TaxRule:
        """Administrative helper used by seeding and tests"""
        if not tax_type:
            raise MissingFieldError("tax_type", "tax rule")
        if not tax_name:
            raise MissingFieldError("tax_name", "tax rule")
        if effective_date is None:
            raise MissingFieldError("effective_date", "tax rule")

        rate = to_decimal(tax_rate, "tax_rate")
        if rate is None:
            raise MissingFieldError("tax_rate", "tax rule")
        if rate < 0 or rate > MAX_TAX_RATE:
            raise InvalidValueError(f"tax_rate must be between 0 and 100 (got {rate})", {"field": "tax_rate"})
        if rate != rate.quantize(Decimal("0.01")):
            raise InvalidValueError(f"tax_rate allows at most 2 decimal places (got {rate})", {"field": "tax_rate"})

        effective_date = as_utc(effective_date)
        expiry_date = as_utc(expiry_date)
        if expiry_date is not None and expiry_date <= effective_date:
            raise InvariantViolationError("expiry_date must be after effective_date")

        rule = TaxRule(
            country_code=normalize_country_code(country_code),
            tax_type=tax_type.upper(),
            tax_name=tax_name,
            tax_rate=rate,
            applies_to=applies_to or config.DEFAULT_TAX_APPLIES_TO,
            required_tax_number=required_tax_number,
            effective_date=effective_date,
            expiry_date=expiry_date,
            active=active,
        )
        self.db.add(rule)
        commit_or_raise(self.db, rule, "create tax rule")
        logger.info(f"Created tax rule {rule.id}: {rule.country_code} {rule.tax_type} {rule.tax_rate}%")
        return rule

    def list_rules(self, country_code: Optional[str] = None, active_only: bool = True) -> List[TaxRule]:
        query = self.db.query(TaxRule)
        if country_code:
            query = query.filter(TaxRule.country_code == normalize_country_code(country_code))
        if active_only:
            query = query.filter(TaxRule.active.is_(True))
        return query.order_by(TaxRule.country_code, TaxRule.effective_date.desc()).all()
