# clinicdesk/routers/payments.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..config import get_settings
from ..database import get_db
from ..dependencies import get_current_user_id
from ..limiter import limiter
from ..services import payment_ledger

router = APIRouter(
    tags=["Payments"],
    responses={404: {"description": "Not found"}},
)


def _payment_limit() -> str:
    return get_settings().payment_rate_limit


@router.post("/invoices/{invoice_id}/payments", response_model=schemas.PaymentResponse,
             status_code=status.HTTP_201_CREATED)
@limiter.limit(_payment_limit)
def record_payment(
    request: Request,
    invoice_id: str,
    payment: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Record a payment. 422 OVER_PAYMENT when it exceeds the remaining balance."""
    return payment_ledger.record_payment(
        db, invoice_id, payment.amount, payment.method,
        received_by=user_id, reference=payment.reference, notes=payment.notes,
    )


@router.get("/invoices/{invoice_id}/payments", response_model=List[schemas.PaymentResponse])
def list_payments(invoice_id: str, db: Session = Depends(get_db)):
    return payment_ledger.list_payments(db, invoice_id)


@router.put("/payments/{payment_id}", response_model=schemas.PaymentResponse)
@limiter.limit(_payment_limit)
def update_payment(
    request: Request,
    payment_id: str,
    changes: schemas.PaymentUpdate,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    return payment_ledger.update_payment(
        db, payment_id, amount=changes.amount, method=changes.method,
        reference=changes.reference, notes=changes.notes, actor=user_id,
    )


@router.delete("/payments/{payment_id}", response_model=schemas.InvoiceResponse)
def delete_payment(payment_id: str, db: Session = Depends(get_db),
                   user_id: Optional[str] = Depends(get_current_user_id)):
    """Delete a payment and return the invoice with its recomputed balance."""
    return payment_ledger.delete_payment(db, payment_id, actor=user_id)
