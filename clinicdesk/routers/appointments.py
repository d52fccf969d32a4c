# clinicdesk/routers/appointments.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import get_settings
from ..database import get_db
from ..dependencies import get_current_user_id
from ..errors import NotFoundError
from ..limiter import limiter
from ..models import AppointmentStatus
from ..services import appointment_service

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)


def _booking_limit() -> str:
    return get_settings().booking_rate_limit


@router.post("", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(_booking_limit)
def create_appointment(
    request: Request,
    appointment: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    """Book an appointment. 409 when the doctor is already booked in that interval."""
    return appointment_service.create_appointment(db, appointment, created_by=user_id)


@router.get("", response_model=List[schemas.AppointmentResponse])
def list_appointments(
    day: date,
    doctor_id: Optional[str] = None,
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    return crud.get_appointments_for_day(db, day, doctor_id=doctor_id, status=status_filter)


@router.get("/{appointment_id}", response_model=schemas.AppointmentResponse)
def get_appointment(appointment_id: str, db: Session = Depends(get_db)):
    appointment = crud.get_appointment(db, appointment_id)
    if appointment is None:
        raise NotFoundError(f"Appointment {appointment_id} not found.", field="appointment_id")
    return appointment


@router.put("/{appointment_id}/reschedule", response_model=schemas.AppointmentResponse)
@limiter.limit(_booking_limit)
def reschedule_appointment(
    request: Request,
    appointment_id: str,
    changes: schemas.AppointmentReschedule,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    return appointment_service.reschedule_appointment(db, appointment_id, changes, actor=user_id)


@router.post("/{appointment_id}/confirm", response_model=schemas.AppointmentResponse)
def confirm_appointment(appointment_id: str, db: Session = Depends(get_db),
                        user_id: Optional[str] = Depends(get_current_user_id)):
    return appointment_service.confirm_appointment(db, appointment_id, actor=user_id)


@router.post("/{appointment_id}/cancel", response_model=schemas.AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    body: Optional[schemas.AppointmentStatusChange] = None,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    reason = body.reason if body else None
    return appointment_service.cancel_appointment(db, appointment_id, reason=reason, actor=user_id)


@router.post("/{appointment_id}/no-show", response_model=schemas.AppointmentResponse)
def mark_no_show(
    appointment_id: str,
    body: Optional[schemas.AppointmentStatusChange] = None,
    db: Session = Depends(get_db),
    user_id: Optional[str] = Depends(get_current_user_id),
):
    reason = body.reason if body else None
    return appointment_service.mark_no_show(db, appointment_id, reason=reason, actor=user_id)


@router.post("/{appointment_id}/complete", response_model=schemas.VisitResponse, status_code=status.HTTP_201_CREATED)
def complete_appointment(appointment_id: str, db: Session = Depends(get_db),
                         user_id: Optional[str] = Depends(get_current_user_id)):
    """Complete the appointment and return the visit opened for it."""
    return appointment_service.complete_appointment(db, appointment_id, actor=user_id)
