"""
Billing cycle and license adjustment API routes
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from decimal import Decimal
import logging

from .db.engine import get_db
from .services.billing_cycle_service import BillingCycleService
from .services.license_adjustment_service import LicenseAdjustmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/billing-cycles", tags=["billing-cycles"])
adjustments_router = APIRouter(prefix="/v1/license-adjustments", tags=["license-adjustments"])


# Billing cycles

class CreateBillingCycleRequest(BaseModel):
    """Request to create a billing cycle with explicit figures"""
    license_id: int
    period_start: datetime
    period_end: datetime
    base_employee_count: int = Field(..., ge=0)
    final_employee_count: int = Field(..., ge=0)
    base_amount_usd: Decimal
    adjustments_amount_usd: Optional[Decimal] = None
    tax_amount_usd: Optional[Decimal] = None
    subtotal_usd: Optional[Decimal] = None
    total_amount_usd: Optional[Decimal] = None
    billing_currency_code: str = Field(default="USD", min_length=3, max_length=3)
    exchange_rate_used: Decimal = Decimal("1")
    payment_due_date: datetime
    base_amount_local: Optional[Decimal] = None
    adjustments_amount_local: Optional[Decimal] = None
    subtotal_local: Optional[Decimal] = None
    tax_amount_local: Optional[Decimal] = None
    total_amount_local: Optional[Decimal] = None
    tax_rules_applied: Optional[List[Dict[str, Any]]] = None
    notes: Optional[str] = Field(None, max_length=2000)


class UpdateBillingCycleRequest(BaseModel):
    """Partial update; amounts are re-derived after merging"""
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    base_employee_count: Optional[int] = Field(None, ge=0)
    final_employee_count: Optional[int] = Field(None, ge=0)
    base_amount_usd: Optional[Decimal] = None
    adjustments_amount_usd: Optional[Decimal] = None
    tax_amount_usd: Optional[Decimal] = None
    billing_currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    exchange_rate_used: Optional[Decimal] = None
    payment_due_date: Optional[datetime] = None
    base_amount_local: Optional[Decimal] = None
    adjustments_amount_local: Optional[Decimal] = None
    subtotal_local: Optional[Decimal] = None
    tax_amount_local: Optional[Decimal] = None
    total_amount_local: Optional[Decimal] = None
    tax_rules_applied: Optional[List[Dict[str, Any]]] = None
    notes: Optional[str] = Field(None, max_length=2000)


class BuildBillingCycleRequest(BaseModel):
    """Bill a license's current period from its seats and price"""
    license_id: int
    exchange_rate_used: Optional[Decimal] = None
    billing_currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    tax_amount_usd: Optional[Decimal] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_billing_cycle(request: CreateBillingCycleRequest, db: Session = Depends(get_db)):
    cycle = BillingCycleService(db).create_cycle(request.model_dump(exclude_none=True))
    return cycle.to_dict()


@router.post("/build", status_code=status.HTTP_201_CREATED)
def build_billing_cycle(request: BuildBillingCycleRequest, db: Session = Depends(get_db)):
    cycle = BillingCycleService(db).build_cycle_for_license(
        request.license_id,
        exchange_rate_used=request.exchange_rate_used,
        billing_currency_code=request.billing_currency_code,
        tax_amount_usd=request.tax_amount_usd,
    )
    return cycle.to_dict()


@router.get("/")
def list_billing_cycles(
    license_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    currency: Optional[str] = None,
    period_from: Optional[datetime] = None,
    period_to: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    cycles = BillingCycleService(db).list_cycles(
        license_id=license_id,
        status=status_filter,
        currency=currency,
        period_from=period_from,
        period_to=period_to,
        limit=limit,
        offset=offset,
    )
    return [cycle.to_dict() for cycle in cycles]


@router.get("/overdue")
def list_overdue_cycles(db: Session = Depends(get_db)):
    return [cycle.to_dict() for cycle in BillingCycleService(db).get_overdue_cycles()]


@router.get("/due-soon")
def list_due_soon_cycles(days: Optional[int] = Query(None, ge=0), db: Session = Depends(get_db)):
    return [cycle.to_dict() for cycle in BillingCycleService(db).get_due_soon_cycles(days)]


@router.get("/pending-invoice")
def list_pending_invoice_cycles(db: Session = Depends(get_db)):
    return [cycle.to_dict() for cycle in BillingCycleService(db).get_pending_invoice_cycles()]


@router.get("/completed")
def list_completed_cycles(license_id: Optional[int] = None, db: Session = Depends(get_db)):
    return [cycle.to_dict() for cycle in BillingCycleService(db).get_completed_cycles(license_id)]


@router.get("/guid/{guid}")
def get_billing_cycle_by_guid(guid: int, db: Session = Depends(get_db)):
    return BillingCycleService(db).get_by_guid(guid).to_dict()


@router.get("/{cycle_id}")
def get_billing_cycle(cycle_id: int, db: Session = Depends(get_db)):
    return BillingCycleService(db).require_cycle(cycle_id).to_dict()


@router.patch("/{cycle_id}")
def update_billing_cycle(cycle_id: int, request: UpdateBillingCycleRequest, db: Session = Depends(get_db)):
    changes = request.model_dump(exclude_unset=True)
    return BillingCycleService(db).update_cycle(cycle_id, changes).to_dict()


@router.post("/{cycle_id}/invoice")
def invoice_billing_cycle(cycle_id: int, db: Session = Depends(get_db)):
    return BillingCycleService(db).mark_as_invoiced(cycle_id).to_dict()


@router.post("/{cycle_id}/pay")
def pay_billing_cycle(cycle_id: int, db: Session = Depends(get_db)):
    return BillingCycleService(db).mark_as_paid(cycle_id).to_dict()


@router.post("/{cycle_id}/overdue")
def mark_billing_cycle_overdue(cycle_id: int, db: Session = Depends(get_db)):
    return BillingCycleService(db).mark_as_overdue(cycle_id).to_dict()


@router.post("/{cycle_id}/cancel")
def cancel_billing_cycle(cycle_id: int, request: Optional[CancelRequest] = None, db: Session = Depends(get_db)):
    reason = request.reason if request else None
    return BillingCycleService(db).cancel(cycle_id, reason).to_dict()


# License adjustments

class CreateAdjustmentRequest(BaseModel):
    """Request to add seats mid-cycle"""
    license_id: int
    employees_added_count: int = Field(..., gt=0)
    exchange_rate_used: Optional[Decimal] = None
    billing_currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    adjustment_date: Optional[datetime] = None
    price_per_employee_usd: Optional[Decimal] = None
    months_remaining: Optional[Decimal] = None
    subtotal_usd: Optional[Decimal] = None
    tax_amount_usd: Optional[Decimal] = None
    payment_due_immediately: bool = True
    subtotal_local: Optional[Decimal] = None
    tax_amount_local: Optional[Decimal] = None
    total_amount_local: Optional[Decimal] = None


class PaymentStatusRequest(BaseModel):
    status: str
    completed_at: Optional[datetime] = None


@adjustments_router.post("/", status_code=status.HTTP_201_CREATED)
def create_adjustment(request: CreateAdjustmentRequest, db: Session = Depends(get_db)):
    data = request.model_dump()
    local_overrides = {}
    for field in ("subtotal_local", "tax_amount_local", "total_amount_local"):
        value = data.pop(field)
        if value is not None:
            local_overrides[field] = value
    adjustment = LicenseAdjustmentService(db).create_adjustment(local_overrides=local_overrides, **data)
    return adjustment.to_dict()


@adjustments_router.get("/")
def list_adjustments(
    license_id: Optional[int] = None,
    payment_status: Optional[str] = None,
    currency: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    adjustments = LicenseAdjustmentService(db).list_adjustments(
        license_id=license_id,
        payment_status=payment_status,
        currency=currency,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        offset=offset,
    )
    return [adjustment.to_dict() for adjustment in adjustments]


@adjustments_router.get("/stats/by-currency")
def adjustment_stats_by_currency(db: Session = Depends(get_db)):
    """Per-currency totals, pending vs completed"""
    return LicenseAdjustmentService(db).get_financial_stats_by_currency()


@adjustments_router.get("/pending-payment")
def list_pending_payment_adjustments(db: Session = Depends(get_db)):
    return [adjustment.to_dict() for adjustment in LicenseAdjustmentService(db).get_pending_payment()]


@adjustments_router.get("/invoiced-unpaid")
def list_invoiced_unpaid_adjustments(db: Session = Depends(get_db)):
    return [adjustment.to_dict() for adjustment in LicenseAdjustmentService(db).get_invoiced_not_paid()]


@adjustments_router.get("/proration")
def preview_proration(
    license_id: int,
    employees_added_count: int = Query(..., gt=0),
    adjustment_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    return LicenseAdjustmentService(db).calculate_proration(license_id, employees_added_count, adjustment_date)


@adjustments_router.get("/guid/{guid}")
def get_adjustment_by_guid(guid: int, db: Session = Depends(get_db)):
    return LicenseAdjustmentService(db).get_by_guid(guid).to_dict()


@adjustments_router.get("/{adjustment_id}")
def get_adjustment(adjustment_id: int, db: Session = Depends(get_db)):
    return LicenseAdjustmentService(db).require_adjustment(adjustment_id).to_dict()


@adjustments_router.post("/{adjustment_id}/invoice-sent")
def mark_adjustment_invoice_sent(adjustment_id: int, db: Session = Depends(get_db)):
    return LicenseAdjustmentService(db).mark_invoice_sent(adjustment_id).to_dict()


@adjustments_router.post("/{adjustment_id}/payment-status")
def update_adjustment_payment_status(adjustment_id: int, request: PaymentStatusRequest,
                                     db: Session = Depends(get_db)):
    adjustment = LicenseAdjustmentService(db).update_payment_status(
        adjustment_id, request.status, request.completed_at
    )
    return adjustment.to_dict()
