# clinicdesk/services/appointment_service.py
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..crud import CRUDError
from ..errors import (
    EngineError, InvalidStateTransitionError, MissingReferenceError, NotFoundError,
    OutsideBusinessHoursError, SchedulingConflictError, InvalidAmountError,
)
from ..models import AppointmentStatus
from .calendar_policy import appointment_end, is_within_business_hours, normalize_timestamp
from .conflict_service import has_conflict

logger = structlog.get_logger(__name__)

# PostgreSQL exclusion constraint installed by database.create_tables
OVERLAP_CONSTRAINT = "appointments_no_overlap"

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW, AppointmentStatus.COMPLETED,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW, AppointmentStatus.COMPLETED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def allowed_transitions(status: AppointmentStatus) -> FrozenSet[AppointmentStatus]:
    return ALLOWED_TRANSITIONS[AppointmentStatus(status)]


def ensure_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    if AppointmentStatus(target) not in allowed_transitions(current):
        raise InvalidStateTransitionError(
            f"Cannot move appointment from {AppointmentStatus(current).value} to {AppointmentStatus(target).value}.",
            field="status",
            current=AppointmentStatus(current).value,
            target=AppointmentStatus(target).value,
        )


def _append_note(appointment: models.Appointment, text: Optional[str]) -> None:
    if not text:
        return
    appointment.notes = f"{appointment.notes}\n{text}" if appointment.notes else text


def _load_for_update(db: Session, appointment_id: str) -> models.Appointment:
    appointment = crud.get_appointment(db, appointment_id, for_update=True)
    if appointment is None:
        raise NotFoundError(f"Appointment {appointment_id} not found.", field="appointment_id")
    return appointment


def _validate_interval(start: datetime, duration_minutes: int) -> None:
    if duration_minutes is None or duration_minutes <= 0:
        raise InvalidAmountError("Duration must be a positive number of minutes.", field="duration_minutes")
    settings = get_settings()
    if duration_minutes > settings.max_appointment_minutes:
        raise InvalidAmountError(
            f"Duration cannot exceed {settings.max_appointment_minutes} minutes.", field="duration_minutes",
        )
    if settings.enforce_business_hours and not is_within_business_hours(start, duration_minutes, settings):
        raise OutsideBusinessHoursError(
            f"{start:%Y-%m-%d %H:%M} for {duration_minutes} minutes is outside business hours "
            f"({settings.business_open:%H:%M}-{settings.business_close:%H:%M}, closed on weekday {settings.closed_weekday}).",
            field="start_time",
        )


def _ensure_free(db: Session, doctor_id: str, start: datetime, duration_minutes: int,
                 exclude_appointment_id: Optional[str] = None) -> None:
    if has_conflict(db, doctor_id, start, duration_minutes, exclude_appointment_id):
        raise SchedulingConflictError(
            f"Doctor is already booked between {start:%H:%M} and {appointment_end(start, duration_minutes):%H:%M}.",
            field="start_time",
            doctor_id=doctor_id,
        )


def _integrity_failure(e: IntegrityError, event: str, **context) -> Exception:
    """Map a constraint failure on an appointment write to a domain error."""
    if crud.is_exclusion_violation(e, OVERLAP_CONSTRAINT):
        logger.warning(event, constraint=OVERLAP_CONSTRAINT, **context)
        return SchedulingConflictError("Doctor is already booked at that time.", field="start_time", **context)
    logger.error(event, error=str(e.orig), **context)
    return CRUDError("A database error occurred while saving the appointment.")


def create_appointment(
db: Session, data: schemas.AppointmentCreate, created_by: Optional[str] = None) -> models.Appointment:
    """
    Book a new SCHEDULED appointment.

    The doctor row is locked before the conflict check so that two concurrent
    bookings for the same doctor are serialised; the check and the insert
    commit together.
    """
    settings = get_settings()
    try:
        if crud.get_patient(db, data.patient_id) is None:
            raise MissingReferenceError(f"Patient {data.patient_id} not found.", field="patient_id")
        if crud.get_doctor(db, data.doctor_id) is None:
            raise MissingReferenceError(f"Doctor {data.doctor_id} not found.", field="doctor_id")
        service = None
        if data.service_id is not None:
            service = crud.get_service(db, data.service_id)
            if service is None:
                raise MissingReferenceError(f"Service {data.service_id} not found.", field="service_id")

        start = normalize_timestamp(data.start_time, settings)
        duration = data.duration_minutes or (service.duration_minutes if service else settings.slot_minutes)
        _validate_interval(start, duration)

        crud.lock_doctors(db, [data.doctor_id])
        _ensure_free(db, data.doctor_id, start, duration)

        appointment = crud.add_appointment(db, models.Appointment(
            patient_id=data.patient_id,
            doctor_id=data.doctor_id,
            service_id=data.service_id,
            start_time=start,
            duration_minutes=duration,
            status=AppointmentStatus.SCHEDULED,
            notes=data.notes,
            created_by=created_by,
        ))
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        raise _integrity_failure(e, "appointment_insert_rejected", doctor_id=data.doctor_id)

    db.refresh(appointment)
    logger.info("appointment_created", appointment_id=appointment.id, doctor_id=appointment.doctor_id,
                start_time=appointment.start_time.isoformat(), duration_minutes=appointment.duration_minutes)
    compliance_logger.log_event(
        user_id=created_by, action='APPOINTMENT_CREATED', category='SCHEDULING',
        resource_type='appointment', resource_id=appointment.id,
        details=f"Booked {appointment.start_time:%Y-%m-%d %H:%M} for {appointment.duration_minutes} min",
    )
    return appointment


def reschedule_appointment(db: Session, appointment_id: str, changes: schemas.AppointmentReschedule,
                           actor: Optional[str] = None) -> models.Appointment:
    """
    Move, resize or reassign a non-terminal appointment.

    The proposed interval is checked excluding the appointment itself. On any
    failure the transaction is rolled back and the stored appointment is left
    exactly as it was.
    """
    settings = get_settings()
    try:
        appointment = _load_for_update(db, appointment_id)
        if AppointmentStatus(appointment.status).is_terminal:
            raise InvalidStateTransitionError(
                f"Cannot reschedule a {appointment.status.value} appointment.", field="status",
            )

        new_doctor_id = changes.doctor_id or appointment.doctor_id
        new_start = normalize_timestamp(changes.start_time, settings) if changes.start_time else appointment.start_time
        new_duration = changes.duration_minutes or appointment.duration_minutes

        if new_doctor_id != appointment.doctor_id and crud.get_doctor(db, new_doctor_id) is None:
            raise MissingReferenceError(f"Doctor {new_doctor_id} not found.", field="doctor_id")
        _validate_interval(new_start, new_duration)

        crud.lock_doctors(db, [appointment.doctor_id, new_doctor_id])
        _ensure_free(db, new_doctor_id, new_start, new_duration, exclude_appointment_id=appointment.id)

        previous = (appointment.doctor_id, appointment.start_time, appointment.duration_minutes)
        appointment.doctor_id = new_doctor_id
        appointment.start_time = new_start
        appointment.duration_minutes = new_duration
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        raise _integrity_failure(e, "appointment_update_rejected", appointment_id=appointment_id)

    db.refresh(appointment)
    logger.info("appointment_rescheduled", appointment_id=appointment.id,
                previous_doctor_id=previous[0], previous_start=previous[1].isoformat(),
                doctor_id=appointment.doctor_id, start_time=appointment.start_time.isoformat(),
                duration_minutes=appointment.duration_minutes)
    compliance_logger.log_event(
        user_id=actor, action='APPOINTMENT_RESCHEDULED', category='SCHEDULING',
        resource_type='appointment', resource_id=appointment.id,
        details=f"Moved from {previous[1]:%Y-%m-%d %H:%M} to {appointment.start_time:%Y-%m-%d %H:%M}",
    )
    return appointment


def _transition(db: Session, appointment_id: str, target: AppointmentStatus,
                reason: Optional[str], actor: Optional[str]) -> models.Appointment:
    try:
        appointment = _load_for_update(db, appointment_id)
        previous = AppointmentStatus(appointment.status)
        ensure_transition(previous, target)
        appointment.status = target
        _append_note(appointment, f"{target.value}: {reason}" if reason else None)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info("appointment_status_changed", appointment_id=appointment.id,
                previous_status=previous.value, status=target.value)
    compliance_logger.log_event(
        user_id=actor, action=f'APPOINTMENT_{target.value}', category='SCHEDULING',
        resource_type='appointment', resource_id=appointment.id, details=reason,
    )
    return appointment


def confirm_appointment(db: Session, appointment_id: str, actor: Optional[str] = None) -> models.Appointment:
    return _transition(db, appointment_id, AppointmentStatus.CONFIRMED, None, actor)


def cancel_appointment(db: Session, appointment_id: str, reason: Optional[str] = None,
                       actor: Optional[str] = None) -> models.Appointment:
    return _transition(db, appointment_id, AppointmentStatus.CANCELLED, reason, actor)


def mark_no_show(db: Session, appointment_id: str, reason: Optional[str] = None,
                 actor: Optional[str] = None) -> models.Appointment:
    return _transition(db, appointment_id, AppointmentStatus.NO_SHOW, reason, actor)


def complete_appointment(db: Session, appointment_id: str, actor: Optional[str] = None) -> models.Visit:
    """
    Mark the appointment COMPLETED and open its visit.

    The visit is created IN_PROGRESS for the same patient and doctor with one
    procedure for the appointment's service, if it has one. An appointment
    yields at most one visit.
    """
    try:
        appointment = _load_for_update(db, appointment_id)
        ensure_transition(appointment.status, AppointmentStatus.COMPLETED)
        if crud.get_visit_by_appointment(db, appointment.id) is not None:
            raise InvalidStateTransitionError(
                f"Appointment {appointment.id} already has a visit.", field="appointment_id",
            )

        procedures = []
        total = Decimal("0.000")
        if appointment.service_id is not None:
            service = crud.get_service(db, appointment.service_id)
            if service is None:
                raise MissingReferenceError(f"Service {appointment.service_id} not found.", field="service_id")
            procedures.append(schemas.Procedure(service_id=service.id).to_record())
            total = service.price

        appointment.status = AppointmentStatus.COMPLETED
        visit = crud.add_visit(db, models.Visit(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            visit_date=appointment.start_time,
            procedures=procedures,
            status=models.VisitStatus.IN_PROGRESS,
            total_amount=total,
        ))
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        if not crud.is_unique_violation(e, "visits", "appointment_id"):
            logger.error("visit_insert_failed", appointment_id=appointment_id, error=str(e.orig))
            raise CRUDError("A database error occurred while opening the visit.")
        # A concurrent completion won
        logger.warning("visit_insert_rejected", appointment_id=appointment_id)
        raise InvalidStateTransitionError(f"Appointment {appointment_id} already has a visit.", field="appointment_id")

    db.refresh(visit)
    logger.info("appointment_completed", appointment_id=appointment_id, visit_id=visit.id)
    compliance_logger.log_event(
        user_id=actor, action='APPOINTMENT_COMPLETED', category='SCHEDULING',
        resource_type='appointment', resource_id=appointment_id, visit_id=visit.id,
    )
    return visit
