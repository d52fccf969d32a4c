# clinicdesk/schemas.py
from datetime import datetime, date
from decimal import Decimal
from typing import List, Optional, Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from .models import (
    AppointmentStatus, VisitStatus, PaymentStatus, PaymentMethod, DiscountType
)


def _format_money(value: Decimal) -> str:
    return f"{value:.3f}"


# Money crosses the API as a decimal string with exactly three fractional digits.
# More precise input is rejected rather than truncated.
Money = Annotated[Decimal, Field(ge=0, decimal_places=3), PlainSerializer(_format_money, return_type=str, when_used="json")]
PositiveMoney = Annotated[Decimal, Field(gt=0, decimal_places=3), PlainSerializer(_format_money, return_type=str, when_used="json")]
Percentage = Annotated[Decimal, Field(ge=0, le=100, decimal_places=3), PlainSerializer(_format_money, return_type=str, when_used="json")]


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Service Catalogue Schemas ---
class ServiceBase(BaseSchema):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    price: Money
    duration_minutes: int = Field(30, gt=0)

class ServiceCreate(ServiceBase):
    pass

class ServiceResponse(ServiceBase):
    id: str
    is_active: bool


# --- Appointment Schemas ---
class AppointmentBase(BaseSchema):
    patient_id: str
    doctor_id: str
    service_id: Optional[str] = None
    start_time: datetime
    notes: Optional[str] = None

class AppointmentCreate(AppointmentBase):
    # Falls back to the service's default duration, then to the slot length
    duration_minutes: Optional[int] = Field(None, gt=0)

class AppointmentReschedule(BaseSchema):
    start_time: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, gt=0)
    doctor_id: Optional[str] = None

class AppointmentStatusChange(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)

class AppointmentResponse(AppointmentBase):
    id: str
    duration_minutes: int
    end_time: datetime
    status: AppointmentStatus
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AvailableSlotsResponse(BaseSchema):
    day: date
    doctor_id: Optional[str] = None
    slot_minutes: int
    slots: List[datetime]


# --- Visit Schemas ---
class Procedure(BaseSchema):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    service_id: str = Field(..., alias="serviceId")
    tooth: Optional[str] = Field(None, max_length=10)
    surfaces: Optional[List[str]] = None
    notes: Optional[str] = None

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)

class VisitCreate(BaseSchema):
    patient_id: str
    doctor_id: str
    appointment_id: Optional[str] = None
    visit_date: Optional[datetime] = None
    chief_complaint: Optional[str] = None
    diagnosis: Optional[str] = None
    doctor_notes: Optional[str] = None
    procedures: List[Procedure] = Field(default_factory=list)

class VisitUpdate(BaseSchema):
    chief_complaint: Optional[str] = None
    diagnosis: Optional[str] = None
    doctor_notes: Optional[str] = None
    procedures: Optional[List[Procedure]] = None

class VisitResponse(BaseSchema):
    id: str
    appointment_id: Optional[str] = None
    patient_id: str
    doctor_id: str
    visit_date: datetime
    chief_complaint: Optional[str] = None
    diagnosis: Optional[str] = None
    doctor_notes: Optional[str] = None
    procedures: List[Procedure]
    status: VisitStatus
    total_amount: Money


# --- Invoice Schemas ---
class InvoiceItemCreate(BaseSchema):
    service_id: Optional[str] = None
    description: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    unit_price: Money

class InvoiceItemUpdate(BaseSchema):
    description: Optional[str] = Field(None, min_length=1)
    quantity: Optional[int] = Field(None, ge=1)
    unit_price: Optional[Money] = None

class InvoiceItemResponse(InvoiceItemCreate):
    id: str
    total_price: Money

class InvoiceGenerate(BaseSchema):
    discount_type: DiscountType = DiscountType.FLAT
    discount_value: Money = Decimal("0")
    tax_percentage: Percentage = Decimal("0")

class InvoiceCreate(InvoiceGenerate):
    patient_id: str
    items: List[InvoiceItemCreate] = Field(..., min_length=1)
    due_date: Optional[datetime] = None
    notes: Optional[str] = None

class InvoiceRefund(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)

class InvoiceResponse(BaseSchema):
    id: str
    invoice_number: str
    patient_id: str
    visit_id: Optional[str] = None
    issue_date: datetime
    due_date: Optional[datetime] = None
    discount_type: DiscountType
    discount_value: Money
    tax_percentage: Percentage
    subtotal: Money
    discount_amount: Money
    tax_amount: Money
    total_amount: Money
    paid_amount: Money
    balance_due: Money
    payment_status: PaymentStatus
    notes: Optional[str] = None
    items: List[InvoiceItemResponse] = []

class OutstandingBalanceResponse(BaseSchema):
    invoice_count: int
    outstanding_amount: Money


# --- Payment Schemas ---
class PaymentCreate(BaseSchema):
    amount: PositiveMoney
    method: PaymentMethod
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None

class PaymentUpdate(BaseSchema):
    amount: Optional[PositiveMoney] = None
    method: Optional[PaymentMethod] = None
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None

class PaymentResponse(BaseSchema):
    id: str
    invoice_id: str
    amount: Money
    method: PaymentMethod
    reference: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[str] = None
    paid_at: datetime


# --- Ledger Consistency Schemas ---
class LedgerInconsistency(BaseModel):
    invoice_id: str
    invoice_number: str
    recorded_paid: Money
    payments_total: Money
    recorded_status: PaymentStatus
    expected_status: PaymentStatus

class LedgerReport(BaseModel):
    checked_invoices: int
    inconsistencies: List[LedgerInconsistency]
    fixed: bool = False
