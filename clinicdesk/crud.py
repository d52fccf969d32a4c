# clinicdesk/crud.py - Data-access layer
# Engine operations own the transaction: functions used inside them add/flush
# but never commit. Only the standalone catalogue helpers commit themselves.
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, date, time, timedelta
from decimal import Decimal
from typing import Optional, List, Iterable
import logging

from . import models, schemas

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


# PostgreSQL SQLSTATE codes
UNIQUE_VIOLATION = "23505"
EXCLUSION_VIOLATION = "23P01"


def _constraint_details(error: IntegrityError):
    """(sqlstate, constraint name, message) of the driver error behind ``error``."""
    orig = error.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    diag = getattr(orig, "diag", None)
    return code, getattr(diag, "constraint_name", None) or "", str(orig)

def is_unique_violation(error: IntegrityError, table: str, column: str) -> bool:
    """True only when ``error`` is the unique constraint on ``table.column``."""
    code, name, message = _constraint_details(error)
    if code is not None:
        return code == UNIQUE_VIOLATION and column in name
    # SQLite: "UNIQUE constraint failed: invoices.invoice_number"
    return message.startswith("UNIQUE constraint failed") and f"{table}.{column}" in message

def is_exclusion_violation(error: IntegrityError, constraint: str) -> bool:
    code, name, _ = _constraint_details(error)
    return code == EXCLUSION_VIOLATION and name == constraint


# ==================== DOCTOR / PATIENT CRUD OPERATIONS ====================

def get_doctor(db: Session, doctor_id: str) -> Optional[models.User]:
    """Get an active user holding the DOCTOR role."""
    try:
        return db.query(models.User).filter(
            models.User.id == doctor_id,
            models.User.role == models.UserRole.DOCTOR,
            models.User.is_active.is_(True)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching doctor {doctor_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def lock_doctors(db: Session, doctor_ids: Iterable[str]) -> List[models.User]:
    """SELECT ... FOR UPDATE on the doctor rows, in id order so concurrent
    reschedules across two doctors cannot deadlock. Serialises every
    check-then-write on those doctors' appointments for the transaction."""
    ids = sorted(set(doctor_ids))
    try:
        return db.query(models.User).filter(models.User.id.in_(ids)).order_by(models.User.id).with_for_update().all()
    except SQLAlchemyError as e:
        logger.error(f"Error locking doctors {ids}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_active_doctor_ids(db: Session) -> List[str]:
    try:
        rows = db.query(models.User.id).filter(
            models.User.role == models.UserRole.DOCTOR,
            models.User.is_active.is_(True)
        ).order_by(models.User.id).all()
        return [row[0] for row in rows]
    except SQLAlchemyError as e:
        logger.error(f"Error fetching doctor ids: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_patient(db: Session, patient_id: str) -> Optional[models.Patient]:
    try:
        return db.query(models.Patient).filter(models.Patient.id == patient_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching patient {patient_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== SERVICE CATALOGUE CRUD OPERATIONS ====================

def get_service(db: Session, service_id: str) -> Optional[models.Service]:
    try:
        return db.query(models.Service).filter(models.Service.id == service_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching service {service_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_services(db: Session, skip: int = 0, limit: int = 100, active_only: bool = True) -> List[models.Service]:
    try:
        query = db.query(models.Service)
        if active_only:
            query = query.filter(models.Service.is_active.is_(True))
        return query.order_by(models.Service.name).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching services: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def create_service(db: Session, service: schemas.ServiceCreate) -> models.Service:
    db_service = models.Service(**service.model_dump())
    try:
        db.add(db_service)
        db.commit()
        db.refresh(db_service)
        logger.info(f"Created service {db_service.code} priced {db_service.price}")
        return db_service
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Database integrity error on service creation: {e}")
        raise CRUDError(f"Could not create service: code '{service.code}' already exists.")


# ==================== APPOINTMENT CRUD OPERATIONS ====================

def get_appointment(db: Session, appointment_id: str, for_update: bool = False) -> Optional[models.Appointment]:
    try:
        query = db.query(models.Appointment).filter(models.Appointment.id == appointment_id)
        if for_update:
            query = query.with_for_update()
        return query.first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching appointment {appointment_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_appointments_for_day(db: Session, day: date, doctor_id: Optional[str] = None,
                             status: Optional[models.AppointmentStatus] = None) -> List[models.Appointment]:
    """Appointments starting on the given clinic-local day, ordered by start time."""
    start_of_day = datetime.combine(day, time.min)
    end_of_day = start_of_day + timedelta(days=1)
    try:
        query = db.query(models.Appointment).filter(
            models.Appointment.start_time >= start_of_day,
            models.Appointment.start_time < end_of_day
        )
        if doctor_id is not None:
            query = query.filter(models.Appointment.doctor_id == doctor_id)
        if status is not None:
            query = query.filter(models.Appointment.status == status)
        return query.order_by(models.Appointment.start_time.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching appointments for {day}: {e}")
        raise CRUDError("A database error occurred while fetching appointments.")

def get_booked_appointments(db: Session, doctor_id: str, starts_before: Optional[datetime] = None,
                            ends_after: Optional[datetime] = None,
                            exclude_appointment_id: Optional[str] = None,
                            max_duration_minutes: Optional[int] = None) -> List[models.Appointment]:
    """Appointments of a doctor that hold time (SCHEDULED, CONFIRMED, COMPLETED).

    Both bounds are applied in SQL. The end is start + duration, so ``ends_after``
    becomes a lower bound on start through ``max_duration_minutes``; the exact
    end comparison is then made in Python.
    """
    try:
        query = db.query(models.Appointment).filter(
            models.Appointment.doctor_id == doctor_id,
            models.Appointment.status.in_(list(models.BOOKED_APPOINTMENT_STATUSES))
        )
        if exclude_appointment_id is not None:
            query = query.filter(models.Appointment.id != exclude_appointment_id)
        if starts_before is not None:
            query = query.filter(models.Appointment.start_time < starts_before)
        if ends_after is not None and max_duration_minutes is not None:
            query = query.filter(models.Appointment.start_time > ends_after - timedelta(minutes=max_duration_minutes))
        appointments = query.order_by(models.Appointment.start_time.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching booked appointments for doctor {doctor_id}: {e}")
        raise CRUDError("A database error occurred while fetching appointments.")
    if ends_after is not None:
        appointments = [a for a in appointments if a.end_time > ends_after]
    return appointments

def get_doctor_ids_with_bookings(db: Session, day: date, max_duration_minutes: int = 24 * 60) -> List[str]:
    start_of_day = datetime.combine(day, time.min)
    try:
        rows = db.query(models.Appointment.doctor_id).filter(
            models.Appointment.start_time > start_of_day - timedelta(minutes=max_duration_minutes),
            models.Appointment.start_time < start_of_day + timedelta(days=1),
            models.Appointment.status.in_(list(models.BOOKED_APPOINTMENT_STATUSES))
        ).distinct().all()
        return [row[0] for row in rows]
    except SQLAlchemyError as e:
        logger.error(f"Error fetching booked doctors for {day}: {e}")
        raise CRUDError("A database error occurred while fetching appointments.")

def add_appointment(db: Session, appointment: models.Appointment) -> models.Appointment:
    """Stage a new appointment in the current transaction. Does NOT commit."""
    db.add(appointment)
    db.flush()
    return appointment


# ==================== VISIT CRUD OPERATIONS ====================

def get_visit(db: Session, visit_id: str, for_update: bool = False) -> Optional[models.Visit]:
    try:
        query = db.query(models.Visit).filter(models.Visit.id == visit_id)
        if for_update:
            query = query.with_for_update()
        return query.first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visit {visit_id}: {e}")
        raise CRUDError("A database error occurred while fetching the visit.")

def get_visit_by_appointment(db: Session, appointment_id: str) -> Optional[models.Visit]:
    try:
        return db.query(models.Visit).filter(models.Visit.appointment_id == appointment_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visit for appointment {appointment_id}: {e}")
        raise CRUDError("A database error occurred while fetching the visit.")

def get_visits_for_patient(db: Session, patient_id: str, skip: int = 0, limit: int = 20) -> List[models.Visit]:
    try:
        return db.query(models.Visit).filter(
            models.Visit.patient_id == patient_id
        ).order_by(models.Visit.visit_date.desc()).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching visits for patient {patient_id}: {e}")
        raise CRUDError("A database error occurred while fetching visits.")

def add_visit(db: Session, visit: models.Visit) -> models.Visit:
    """Stage a new visit in the current transaction. Does NOT commit."""
    db.add(visit)
    db.flush()
    return visit


# ==================== INVOICE CRUD OPERATIONS ====================

def get_invoice(db: Session, invoice_id: str, for_update: bool = False) -> Optional[models.Invoice]:
    try:
        query = db.query(models.Invoice).filter(models.Invoice.id == invoice_id)
        if for_update:
            # Locked reads must see the committed row, not the identity-map copy
            query = query.with_for_update().populate_existing()
        else:
            query = query.options(joinedload(models.Invoice.items))
        return query.first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching invoice {invoice_id}: {e}")
        raise CRUDError("A database error occurred while fetching the invoice.")

def compare_and_set_paid(db: Session, invoice_id: str, expected_paid: Decimal, paid_amount: Decimal,
                         payment_status: models.PaymentStatus) -> bool:
    """
    UPDATE invoices SET paid_amount, payment_status WHERE paid_amount still
    equals ``expected_paid``. False when another writer moved it first.
    Does NOT commit.
    """
    try:
        updated = db.query(models.Invoice).filter(
            models.Invoice.id == invoice_id,
            models.Invoice.paid_amount == expected_paid
        ).update(
            {models.Invoice.paid_amount: paid_amount, models.Invoice.payment_status: payment_status},
            synchronize_session=False,
        )
        return updated == 1
    except SQLAlchemyError as e:
        logger.error(f"Error updating paid amount of invoice {invoice_id}: {e}")
        raise CRUDError("A database error occurred while updating the invoice.")

def get_invoice_by_visit(
db: Session, visit_id: str) -> Optional[models.Invoice]:
    try:
        return db.query(models.Invoice).filter(models.Invoice.visit_id == visit_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching invoice for visit {visit_id}: {e}")
        raise CRUDError("A database error occurred while fetching the invoice.")

def get_invoices(db: Session, skip: int = 0, limit: int = 100, patient_id: Optional[str] = None,
                 unpaid_only: bool = False) -> List[models.Invoice]:
    try:
        query = db.query(models.Invoice).options(joinedload(models.Invoice.items))
        if patient_id is not None:
            query = query.filter(models.Invoice.patient_id == patient_id)
        if unpaid_only:
            query = query.filter(
                models.Invoice.total_amount > models.Invoice.paid_amount,
                models.Invoice.payment_status != models.PaymentStatus.REFUNDED
            )
        return query.order_by(models.Invoice.issue_date.desc()).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching invoices: {e}")
        raise CRUDError("A database error occurred while fetching invoices.")

def get_all_invoice_ids(db: Session) -> List[str]:
    try:
        return [row[0] for row in db.query(models.Invoice.id).order_by(models.Invoice.id).all()]
    except SQLAlchemyError as e:
        logger.error(f"Error fetching invoice ids: {e}")
        raise CRUDError("A database error occurred while fetching invoices.")

def count_invoice_numbers_with_prefix(db: Session, prefix: str) -> int:
    try:
        return db.query(func.count(models.Invoice.id)).filter(
            models.Invoice.invoice_number.like(f"{prefix}%")
        ).scalar() or 0
    except SQLAlchemyError as e:
        logger.error(f"Error counting invoice numbers for {prefix}: {e}")
        raise CRUDError("A database error occurred while numbering the invoice.")

def get_outstanding_balance(db: Session) -> tuple:
    """(invoice count, sum of total - paid) over non-refunded invoices with a balance."""
    try:
        count, outstanding = db.query(
            func.count(models.Invoice.id),
            func.coalesce(func.sum(models.Invoice.total_amount - models.Invoice.paid_amount), 0)
        ).filter(
            models.Invoice.total_amount > models.Invoice.paid_amount,
            models.Invoice.payment_status != models.PaymentStatus.REFUNDED
        ).one()
        return count, Decimal(str(outstanding))
    except SQLAlchemyError as e:
        logger.error(f"Error computing outstanding balance: {e}")
        raise CRUDError("A database error occurred while computing the outstanding balance.")


# ==================== PAYMENT CRUD OPERATIONS ====================

def get_payment(db: Session, payment_id: str) -> Optional[models.Payment]:
    try:
        return db.query(models.Payment).filter(models.Payment.id == payment_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching payment {payment_id}: {e}")
        raise CRUDError("A database error occurred while fetching the payment.")

def get_payments_for_invoice(db: Session, invoice_id: str) -> List[models.Payment]:
    try:
        return db.query(models.Payment).filter(
            models.Payment.invoice_id == invoice_id
        ).order_by(models.Payment.paid_at.asc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching payments for invoice {invoice_id}: {e}")
        raise CRUDError("A database error occurred while fetching payments.")

def count_payments_for_invoice(db: Session, invoice_id: str) -> int:
    try:
        return db.query(func.count(models.Payment.id)).filter(models.Payment.invoice_id == invoice_id).scalar() or 0
    except SQLAlchemyError as e:
        logger.error(f"Error counting payments for invoice {invoice_id}: {e}")
        raise CRUDError("A database error occurred while fetching payments.")

def add_payment(db: Session, payment: models.Payment) -> models.Payment:
    """Stage a payment in the current transaction. Does NOT commit."""
    db.add(payment)
    db.flush()
    return payment

def remove_payment(db: Session, payment: models.Payment) -> None:
    """Stage a payment deletion in the current transaction. Does NOT commit."""
    db.delete(payment)
    db.flush()
