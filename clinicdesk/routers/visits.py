# clinicdesk/routers/visits.py
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import schemas
from ..database import get_db
from ..dependencies import get_current_user_id
from ..services import invoice_service, visit_service

router = APIRouter(
    prefix="/visits",
    tags=["Visits"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.VisitResponse, status_code=status.HTTP_201_CREATED)
def create_visit(visit: schemas.VisitCreate, db: Session = Depends(get_db),
                 user_id: Optional[str] = Depends(get_current_user_id)):
    return visit_service.create_visit(db, visit, actor=user_id)


@router.get("/patient/{patient_id}", response_model=List[schemas.VisitResponse])
def list_patient_visits(patient_id: str, skip: int = 0, limit: int = 20, db: Session = Depends(get_db)):
    return visit_service.list_patient_visits(db, patient_id, skip=skip, limit=limit)


@router.get("/{visit_id}", response_model=schemas.VisitResponse)
def get_visit(visit_id: str, db: Session = Depends(get_db)):
    return visit_service.get_visit(db, visit_id)


@router.put("/{visit_id}", response_model=schemas.VisitResponse)
def update_visit(visit_id: str, changes: schemas.VisitUpdate, db: Session = Depends(get_db),
                 user_id: Optional[str] = Depends(get_current_user_id)):
    """Edit a visit. Rejected with 409 once an invoice has been generated from it."""
    return visit_service.update_visit(db, visit_id, changes, actor=user_id)


@router.post("/{visit_id}/complete", response_model=schemas.VisitResponse)
def complete_visit(visit_id: str, db: Session = Depends(get_db),
                   user_id: Optional[str] = Depends(get_current_user_id)):
    return visit_service.complete_visit(db, visit_id, actor=user_id)


@router.post("/{visit_id}/cancel", response_model=schemas.VisitResponse)
def cancel_visit(visit_id: str, db: Session = Depends(get_db),
                 user_id: Optional[str] = Depends(get_current_user_id)):
    return visit_service.cancel_visit(db, visit_id, actor=user_id)


@router.post("/{visit_id}/invoice", response_model=schemas.InvoiceResponse, status_code=status.HTTP_201_CREATED)
def generate_invoice(
    visit_id: str,
    params: Optional[schemas.InvoiceGenerate] = None,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Generate the visit's invoice. A second call answers 409 ALREADY_INVOICED."""
    params = params or schemas.InvoiceGenerate()
    return invoice_service.generate_invoice(
        db, visit_id, created_by=user_id,
        discount_type=params.discount_type,
        discount_value=params.discount_value,
        tax_percentage=params.tax_percentage,
    )
