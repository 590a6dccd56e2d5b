"""
Tax rule API routes
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal

from .db.engine import get_db
from .services.tax_calculator import TaxCalculator

router = APIRouter(prefix="/v1/tax-rules", tags=["tax-rules"])


class CreateTaxRuleRequest(BaseModel):
    country_code: str = Field(..., min_length=2, max_length=3)
    tax_type: str = Field(..., min_length=1, max_length=30)
    tax_name: str = Field(..., min_length=1, max_length=100)
    tax_rate: Decimal = Field(..., ge=0, le=100)
    effective_date: datetime
    expiry_date: Optional[datetime] = None
    applies_to: Optional[str] = Field(None, max_length=50)
    required_tax_number: bool = False
    active: bool = True


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_tax_rule(request: CreateTaxRuleRequest, db: Session = Depends(get_db)):
    return TaxCalculator(db).create_rule(**request.model_dump()).to_dict()


@router.get("/")
def list_tax_rules(
    country_code: Optional[str] = None,
    active_only: bool = True,
    db: Session = Depends(get_db),
):
    return [rule.to_dict() for rule in TaxCalculator(db).list_rules(country_code, active_only)]


@router.get("/lookup")
def lookup_tax(
    country_code: str,
    subtotal: Decimal = Query(Decimal("0"), ge=0),
    tax_type: Optional[str] = None,
    applies_to: Optional[str] = None,
    reference_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Applicable rule for a country and the tax it yields on ``subtotal``"""
    calculator = TaxCalculator(db)
    rule = calculator.find_applicable_rule(country_code, tax_type, applies_to, reference_date)
    return {
        "rule": rule.to_dict() if rule else None,
        "calculation": calculator.calculate_tax(subtotal, rule).to_dict(),
    }
