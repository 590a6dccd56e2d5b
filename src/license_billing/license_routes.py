"""
License API routes
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
import logging

from .db.engine import get_db
from .services.license_service import LicenseService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/licenses", tags=["licenses"])


class CreateLicenseRequest(BaseModel):
    """Request to create a license"""
    tenant_id: int = Field(..., gt=0)
    license_type: str = Field(..., min_length=1, max_length=50)
    billing_cycle_months: int = Field(default=1)
    base_price_usd: Decimal = Field(default=Decimal("3.00"), ge=0)
    minimum_seats: int = Field(default=5, gt=0)
    billing_currency_code: str = Field(default="USD", min_length=3, max_length=3)
    billing_country_code: Optional[str] = Field(None, min_length=2, max_length=3)
    current_period_start: datetime
    current_period_end: datetime
    next_renewal_date: Optional[datetime] = None
    initial_seats: Optional[int] = Field(None, ge=0)


class UpdateLicenseRequest(BaseModel):
    """Partial update; omitted fields are left untouched"""
    tenant_id: Optional[int] = Field(None, gt=0)
    license_type: Optional[str] = Field(None, min_length=1, max_length=50)
    billing_cycle_months: Optional[int] = None
    base_price_usd: Optional[Decimal] = Field(None, ge=0)
    minimum_seats: Optional[int] = Field(None, gt=0)
    billing_currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    billing_country_code: Optional[str] = Field(None, min_length=2, max_length=3)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    next_renewal_date: Optional[datetime] = None
    status: Optional[str] = None


class AddSeatsRequest(BaseModel):
    seat_count: int = Field(..., gt=0)
    source: str = Field(default="manual", max_length=30)


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_license(request: CreateLicenseRequest, db: Session = Depends(get_db)):
    """Create a license, optionally seeding its seat ledger with initial_seats"""
    license = LicenseService(db).create_license(request.model_dump(exclude_none=True))
    return license.to_dict()


@router.get("/")
def list_licenses(
    tenant_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    licenses = LicenseService(db).list_licenses(tenant_id=tenant_id, status=status_filter,
                                                limit=limit, offset=offset)
    return [license.to_dict() for license in licenses]


@router.get("/expiring-soon")
def list_expiring_soon(days: Optional[int] = Query(None, ge=0), db: Session = Depends(get_db)):
    return [license.to_dict() for license in LicenseService(db).get_expiring_soon(days)]


@router.get("/guid/{guid}")
def get_license_by_guid(guid: int, db: Session = Depends(get_db)):
    return LicenseService(db).get_by_guid(guid).to_dict()


@router.get("/{license_id}")
def get_license(license_id: int, db: Session = Depends(get_db)):
    return LicenseService(db).require_license(license_id).to_dict()


@router.patch("/{license_id}")
def update_license(license_id: int, request: UpdateLicenseRequest, db: Session = Depends(get_db)):
    changes = request.model_dump(exclude_unset=True)
    return LicenseService(db).update_license(license_id, changes).to_dict()


@router.post("/{license_id}/seats")
def add_seats(license_id: int, request: AddSeatsRequest, db: Session = Depends(get_db)):
    return LicenseService(db).add_seats(license_id, request.seat_count, request.source).to_dict()


@router.post("/{license_id}/renew")
def renew_license(license_id: int, db: Session = Depends(get_db)):
    return LicenseService(db).renew(license_id).to_dict()


@router.post("/{license_id}/suspend")
def suspend_license(license_id: int, db: Session = Depends(get_db)):
    return LicenseService(db).suspend(license_id).to_dict()


@router.post("/{license_id}/reactivate")
def reactivate_license(license_id: int, db: Session = Depends(get_db)):
    return LicenseService(db).reactivate(license_id).to_dict()


@router.post("/{license_id}/terminate")
def terminate_license(license_id: int, db: Session = Depends(get_db)):
    return LicenseService(db).terminate(license_id).to_dict()
