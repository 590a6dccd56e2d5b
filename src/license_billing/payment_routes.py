"""
Payment transaction API routes
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime
from decimal import Decimal
import logging

from .db.engine import get_db
from .services.payment_transaction_service import PaymentTransactionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payment-transactions", tags=["payment-transactions"])


class CreateTransactionRequest(BaseModel):
    """
    Open a payment attempt against exactly one of billing_cycle_id or
    adjustment_id; amount_usd defaults to what is still outstanding
    """
    payment_method: str = Field(..., min_length=1, max_length=30)
    billing_cycle_id: Optional[int] = None
    adjustment_id: Optional[int] = None
    amount_usd: Optional[Decimal] = None
    amount_local: Optional[Decimal] = None
    exchange_rate_used: Optional[Decimal] = None
    currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    payment_reference: Optional[str] = Field(None, max_length=100)
    gateway_response: Optional[Dict[str, Any]] = None


class UpdateTransactionRequest(BaseModel):
    payment_method: Optional[str] = Field(None, min_length=1, max_length=30)
    amount_usd: Optional[Decimal] = None
    amount_local: Optional[Decimal] = None
    exchange_rate_used: Optional[Decimal] = None
    currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    gateway_response: Optional[Dict[str, Any]] = None


class CompleteTransactionRequest(BaseModel):
    completed_at: Optional[datetime] = None
    gateway_response: Optional[Dict[str, Any]] = None


class FailTransactionRequest(BaseModel):
    failure_reason: str
    failed_at: Optional[datetime] = None
    gateway_response: Optional[Dict[str, Any]] = None


class CancelTransactionRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.post("/", status_code=status.HTTP_201_CREATED)
def create_transaction(request: CreateTransactionRequest, db: Session = Depends(get_db)):
    transaction = PaymentTransactionService(db).create_transaction(**request.model_dump())
    return transaction.to_dict()


@router.get("/")
def list_transactions(
    billing_cycle_id: Optional[int] = None,
    adjustment_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    currency: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    date_field: str = "initiated_at",
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    amount_field: str = "usd",
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    transactions = PaymentTransactionService(db).list_transactions(
        billing_cycle_id=billing_cycle_id,
        adjustment_id=adjustment_id,
        status=status_filter,
        currency=currency,
        date_from=date_from,
        date_to=date_to,
        date_field=date_field,
        min_amount=min_amount,
        max_amount=max_amount,
        amount_field=amount_field,
        limit=limit,
        offset=offset,
    )
    return [transaction.to_dict() for transaction in transactions]


@router.get("/current")
def get_current_transaction(
    billing_cycle_id: Optional[int] = None,
    adjustment_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Most recent open attempt for a parent, or null"""
    transaction = PaymentTransactionService(db).get_current_transaction(billing_cycle_id, adjustment_id)
    return transaction.to_dict() if transaction else None


@router.get("/stats")
def transaction_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Counts and USD totals per status, with the success rate"""
    return PaymentTransactionService(db).get_statistics(start_date, end_date)


@router.get("/count")
def count_transactions(status_filter: str = Query(..., alias="status"), db: Session = Depends(get_db)):
    count = PaymentTransactionService(db).get_count_by_status(status_filter)
    return {"status": status_filter.strip().upper(), "count": count}


@router.get("/guid/{guid}")
def get_transaction_by_guid(guid: int, db: Session = Depends(get_db)):
    return PaymentTransactionService(db).get_by_guid(guid).to_dict()


@router.get("/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return PaymentTransactionService(db).require_transaction(transaction_id).to_dict()


@router.patch("/{transaction_id}")
def update_transaction(transaction_id: int, request: UpdateTransactionRequest, db: Session = Depends(get_db)):
    changes = request.model_dump(exclude_unset=True)
    return PaymentTransactionService(db).update_transaction(transaction_id, changes).to_dict()


@router.post("/{transaction_id}/process")
def process_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return PaymentTransactionService(db).start_processing(transaction_id).to_dict()


@router.post("/{transaction_id}/complete")
def complete_transaction(transaction_id: int, request: Optional[CompleteTransactionRequest] = None,
                         db: Session = Depends(get_db)):
    request = request or CompleteTransactionRequest()
    transaction = PaymentTransactionService(db).complete(
        transaction_id, completed_at=request.completed_at, gateway_response=request.gateway_response
    )
    return transaction.to_dict()


@router.post("/{transaction_id}/fail")
def fail_transaction(transaction_id: int, request: FailTransactionRequest, db: Session = Depends(get_db)):
    transaction = PaymentTransactionService(db).fail(
        transaction_id,
        request.failure_reason,
        failed_at=request.failed_at,
        gateway_response=request.gateway_response,
    )
    return transaction.to_dict()


@router.post("/{transaction_id}/cancel")
def cancel_transaction(transaction_id: int, request: Optional[CancelTransactionRequest] = None,
                       db: Session = Depends(get_db)):
    reason = request.reason if request else None
    return PaymentTransactionService(db).cancel(transaction_id, reason).to_dict()


@router.post("/{transaction_id}/retry")
def retry_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return PaymentTransactionService(db).retry(transaction_id).to_dict()
