# clinicdesk/routers/slots.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..config import get_settings
from ..database import get_db
from ..services import slot_service

router = APIRouter(
    prefix="/slots",
    tags=["Slots"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.AvailableSlotsResponse)
def get_available_slots(
    target_date: date = Query(..., alias="date"),
    doctor_id: Optional[str] = None,
    exclude_appointment_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Free slot starts for a day in clinic-local time. Without ``doctor_id`` a slot
    is listed when any doctor is free. Empty on the weekly closed day.
    """
    settings = get_settings()
    slots = slot_service.available_slots(
        db, target_date, doctor_id=doctor_id, exclude_appointment_id=exclude_appointment_id, settings=settings,
    )
    return schemas.AvailableSlotsResponse(
        day=target_date, doctor_id=doctor_id, slot_minutes=settings.slot_minutes, slots=slots,
    )
