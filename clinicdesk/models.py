# clinicdesk/models.py
import uuid
from datetime import timedelta
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index,
    CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


def generate_id() -> str:
    return str(uuid.uuid4())


# Money columns: fixed-point, 3 fractional digits (fils)
Money = Numeric(12, 3, asdecimal=True)


# Enum classes for type safety
class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    RECEPTION = "RECEPTION"
    ACCOUNTANT = "ACCOUNTANT"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_APPOINTMENT_STATUSES


TERMINAL_APPOINTMENT_STATUSES = frozenset({
    AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
})
# Statuses that hold the doctor's time and take part in overlap checks
BOOKED_APPOINTMENT_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED,
})


class VisitStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    KNET = "KNET"
    CARD = "CARD"
    OTHER = "OTHER"


class DiscountType(str, enum.Enum):
    FLAT = "FLAT"
    PERCENTAGE = "PERCENTAGE"


# ==================== Collaborator Models ====================

class User(Base):
    """Staff member. Doctors are users with the DOCTOR role."""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'is_active'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    username = Column(String(50), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.RECEPTION, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())

    appointments = relationship("Appointment", back_populates="doctor", foreign_keys="Appointment.doctor_id")


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    appointments = relationship("Appointment", back_populates="patient")
    visits = relationship("Visit", back_populates="patient")
    invoices = relationship("Invoice", back_populates="patient")


class Service(Base):
    """Priced catalogue entry referenced by appointments, procedures and invoice items."""
    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint('price >= 0', name='ck_services_price_non_negative'),
        CheckConstraint('duration_minutes > 0', name='ck_services_duration_positive'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())


# ==================== Scheduling Models ====================

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_doctor_start', 'doctor_id', 'start_time'),
        Index('idx_appointments_patient', 'patient_id'),
        Index('idx_appointments_status', 'status'),
        CheckConstraint('duration_minutes > 0', name='ck_appointments_duration_positive'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True)

    # Clinic-local wall time
    start_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)

    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.SCHEDULED, nullable=False)
    notes = Column(Text, nullable=True)

    # Caller identity from X-User-Id; staff accounts live outside this service
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("User", back_populates="appointments", foreign_keys=[doctor_id])
    service = relationship("Service")
    visit = relationship("Visit", back_populates="appointment", uselist=False)

    @property
    def end_time(self):
        return self.start_time + timedelta(minutes=self.duration_minutes)


# ==================== Clinical Models ====================

class Visit(Base):
    """A clinical encounter. Procedures are an ordered, embedded JSON list."""
    __tablename__ = "visits"
    __table_args__ = (
        Index('idx_visits_patient_date', 'patient_id', 'visit_date'),
        Index('idx_visits_doctor_date', 'doctor_id', 'visit_date'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=True, unique=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    visit_date = Column(DateTime, nullable=False, server_default=func.now())

    chief_complaint = Column(Text, nullable=True)
    diagnosis = Column(Text, nullable=True)
    doctor_notes = Column(Text, nullable=True)
    procedures = Column(JSON, nullable=False, default=list)  # [{serviceId, tooth, surfaces, notes}]

    status = Column(SQLAlchemyEnum(VisitStatus, name='visit_status'), default=VisitStatus.IN_PROGRESS, nullable=False)
    total_amount = Column(Money, nullable=False, default=0)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="visit")
    patient = relationship("Patient", back_populates="visits")
    doctor = relationship("User", foreign_keys=[doctor_id])
    invoice = relationship("Invoice", back_populates="visit", uselist=False)


# ==================== Billing Models ====================

class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index('idx_invoices_patient', 'patient_id'),
        Index('idx_invoices_status', 'payment_status'),
        CheckConstraint('paid_amount >= 0', name='ck_invoices_paid_non_negative'),
        CheckConstraint('total_amount >= 0', name='ck_invoices_total_non_negative'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    invoice_number = Column(String(32), unique=True, nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    visit_id = Column(String(36), ForeignKey("visits.id"), nullable=True, unique=True)

    issue_date = Column(DateTime, nullable=False, server_default=func.now())
    due_date = Column(DateTime, nullable=True)

    # Parameters the totals were computed from
    discount_type = Column(SQLAlchemyEnum(DiscountType, name='discount_type'), default=DiscountType.FLAT, nullable=False)
    discount_value = Column(Money, nullable=False, default=0)
    tax_percentage = Column(Numeric(6, 3), nullable=False, default=0)

    subtotal = Column(Money, nullable=False, default=0)
    discount_amount = Column(Money, nullable=False, default=0)
    tax_amount = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=0)
    paid_amount = Column(Money, nullable=False, default=0)
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.PENDING, nullable=False)

    notes = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("Patient", back_populates="invoices")
    visit = relationship("Visit", back_populates="invoice")
    items = relationship("InvoiceItem", back_populates="invoice", cascade="all, delete-orphan", order_by="InvoiceItem.position")
    payments = relationship("Payment", back_populates="invoice", order_by="Payment.paid_at")

    @property
    def balance_due(self):
        return self.total_amount - self.paid_amount


class InvoiceItem(Base):
    __tablename__ = "invoice_items"
    __table_args__ = (
        CheckConstraint('quantity >= 1', name='ck_invoice_items_quantity_positive'),
        CheckConstraint('unit_price >= 0', name='ck_invoice_items_unit_price_non_negative'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Money, nullable=False)
    total_price = Column(Money, nullable=False)

    invoice = relationship("Invoice", back_populates="items")
    service = relationship("Service")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index('idx_payments_invoice', 'invoice_id'),
        CheckConstraint('amount > 0', name='ck_payments_amount_positive'),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False)
    amount = Column(Money, nullable=False)
    method = Column(SQLAlchemyEnum(PaymentMethod, name='payment_method'), nullable=False)
    reference = Column(String(100), nullable=True)  # KNET / card transaction reference
    notes = Column(Text, nullable=True)
    received_by = Column(String(64), nullable=True)
    paid_at = Column(DateTime, nullable=False, server_default=func.now())

    invoice = relationship("Invoice", back_populates="payments")
