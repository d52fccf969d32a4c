# clinicdesk/routers/invoices.py
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..dependencies import get_current_user_id
from ..services import invoice_service

router = APIRouter(
    prefix="/invoices",
    tags=["Invoices"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.InvoiceResponse, status_code=status.HTTP_201_CREATED)
def create_invoice(invoice: schemas.InvoiceCreate, db: Session = Depends(get_db),
                   user_id: Optional[str] = Depends(get_current_user_id)):
    return invoice_service.create_manual_invoice(db, invoice, created_by=user_id)


@router.get("", response_model=List[schemas.InvoiceResponse])
def list_invoices(
    skip: int = 0,
    limit: int = 100,
    patient_id: Optional[str] = None,
    unpaid: bool = False,
    db: Session = Depends(get_db),
):
    return crud.get_invoices(db, skip=skip, limit=limit, patient_id=patient_id, unpaid_only=unpaid)


@router.get("/outstanding", response_model=schemas.OutstandingBalanceResponse)
def outstanding_balance(db: Session = Depends(get_db)):
    count, amount = invoice_service.get_outstanding_balance(db)
    return schemas.OutstandingBalanceResponse(invoice_count=count, outstanding_amount=amount)


@router.get("/{invoice_id}", response_model=schemas.InvoiceResponse)
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return invoice_service.get_invoice(db, invoice_id)


@router.post("/{invoice_id}/items", response_model=schemas.InvoiceResponse)
def add_invoice_item(invoice_id: str, item: schemas.InvoiceItemCreate, db: Session = Depends(get_db),
                     user_id: Optional[str] = Depends(get_current_user_id)):
    return invoice_service.add_invoice_item(db, invoice_id, item, actor=user_id)


@router.post("/{invoice_id}/refund", response_model=schemas.InvoiceResponse)
def refund_invoice(
    invoice_id: str,
    body: Optional[schemas.InvoiceRefund] = None,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    return invoice_service.mark_invoice_refunded(db, invoice_id, actor=user_id, reason=body.reason if body else None)


@router.put("/{invoice_id}/items/{item_id}", response_model=schemas.InvoiceResponse)
def update_invoice_item(invoice_id: str, item_id: str, changes: schemas.InvoiceItemUpdate,
                        db: Session = Depends(get_db), user_id: Optional[str] = Depends(get_current_user_id)):
    return invoice_service.update_invoice_item(db, invoice_id, item_id, changes, actor=user_id)


@router.delete("/{invoice_id}/items/{item_id}", response_model=schemas.InvoiceResponse)
def remove_invoice_item(invoice_id: str, item_id: str, db: Session = Depends(get_db),
                        user_id: Optional[str] = Depends(get_current_user_id)):
    return invoice_service.remove_invoice_item(db, invoice_id, item_id, actor=user_id)
