# clinicdesk/services/invoice_service.py
"""Invoice creation from visits or manual entry, line-item edits and refunds.

Invoice numbers look like ``INV-202610-0007``: year and month of issue and a
per-month sequence. The sequence is derived from the invoices already numbered
in that month; a unique-constraint collision with a concurrent writer rolls
the unit of work back and retries with the next value.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..crud import CRUDError
from ..errors import (
    AlreadyInvoicedError, DataIntegrityError, EngineError, InvalidStateTransitionError,
    MissingReferenceError, NotFoundError,
)
from ..models import DiscountType, PaymentStatus, VisitStatus
from .calendar_policy import normalize_timestamp
from .invoice_totals import calculate_totals, derive_payment_status, line_total, quantize, to_money, to_percentage

logger = structlog.get_logger(__name__)

INVOICE_PREFIX = "INV"


def invoice_number_prefix(issued_at: datetime) -> str:
    return f"{INVOICE_PREFIX}-{issued_at:%Y%m}-"


def format_invoice_number(issued_at: datetime, sequence: int) -> str:
    return f"{invoice_number_prefix(issued_at)}{sequence:04d}"


def next_invoice_number(db: Session, issued_at: datetime, offset: int = 0) -> str:
    """Next number in the month of ``issued_at``. ``offset`` skips ahead after a collision."""
    used = crud.count_invoice_numbers_with_prefix(db, invoice_number_prefix(issued_at))
    return format_invoice_number(issued_at, used + 1 + offset)


def build_item_description(service_name: str, tooth: Optional[str] = None, notes: Optional[str] = None) -> str:
    description = service_name
    if tooth:
        description += f" - tooth {tooth}"
    if notes:
        description += f" ({notes})"
    return description


def _clinic_now() -> datetime:
    settings = get_settings()
    return normalize_timestamp(datetime.now(ZoneInfo(settings.clinic_timezone)), settings)


def _apply_totals(invoice: models.Invoice, pairs: List[Tuple[int, Decimal]]) -> None:
    totals = calculate_totals(pairs, invoice.discount_type, invoice.discount_value, invoice.tax_percentage)
    invoice.subtotal = totals.subtotal
    invoice.discount_amount = totals.discount
    invoice.tax_amount = totals.tax
    invoice.total_amount = totals.total


def _commit_numbered(db: Session, stage: Callable[[int], models.Invoice], visit_id: Optional[str] = None) -> models.Invoice:
    """Run ``stage(attempt)`` and commit, retrying invoice-number collisions."""
    retries = get_settings().invoice_number_retries
    for attempt in range(retries):
        try:
            invoice = stage(attempt)
            db.commit()
            return invoice
        except (EngineError, CRUDError):
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            if visit_id is not None and crud.is_unique_violation(e, "invoices", "visit_id"):
                # A concurrent generate_invoice for the same visit committed first
                existing = crud.get_invoice_by_visit(db, visit_id)
                raise AlreadyInvoicedError(
                    f"Visit {visit_id} is already invoiced.",
                    field="visit_id", invoice_id=existing.id if existing else None,
                )
            if not crud.is_unique_violation(e, "invoices", "invoice_number"):
                logger.error("invoice_insert_failed", visit_id=visit_id, error=str(e.orig))
                raise CRUDError("A database error occurred while saving the invoice.")
            logger.warning("invoice_number_collision", attempt=attempt + 1)
    logger.error("invoice_number_exhausted", retries=retries, visit_id=visit_id)
    raise DataIntegrityError(f"Could not allocate a unique invoice number after {retries} attempts.")


def generate_invoice(
    db: Session,
    visit_id: str,
    created_by: Optional[str] = None,
    discount_type: DiscountType = DiscountType.FLAT,
    discount_value: Decimal = Decimal("0"),
    tax_percentage: Decimal = Decimal("0"),
    now: Optional[datetime] = None,
) -> models.Invoice:
    """
    Turn a visit's procedures into an invoice, exactly once per visit.

    One line item per procedure (quantity 1, the service's current price). If
    any referenced service is missing nothing is written.
    """
    settings = get_settings()
    issued_at = normalize_timestamp(now, settings) if now else _clinic_now()

    def stage(attempt: int) -> models.Invoice:
        visit = crud.get_visit(db, visit_id, for_update=True)
        if visit is None:
            raise NotFoundError(f"Visit {visit_id} not found.", field="visit_id")
        if visit.status == VisitStatus.CANCELLED:
            raise InvalidStateTransitionError(f"Visit {visit_id} is cancelled and cannot be invoiced.", field="visit_id")
        existing = crud.get_invoice_by_visit(db, visit_id)
        if existing is not None:
            raise AlreadyInvoicedError(
                f"Visit {visit_id} already has invoice {existing.invoice_number}.",
                field="visit_id", invoice_id=existing.id,
            )

        items = []
        for index, record in enumerate(visit.procedures or []):
            procedure = schemas.Procedure.model_validate(record)
            service = crud.get_service(db, procedure.service_id)
            if service is None:
                raise MissingReferenceError(
                    f"Service {procedure.service_id} referenced by procedure {index + 1} not found.",
                    field=f"procedures[{index}].serviceId",
                )
            price = to_money(service.price, "unit_price")
            items.append(models.InvoiceItem(
                service_id=service.id,
                position=index,
                description=build_item_description(service.name, procedure.tooth, procedure.notes),
                quantity=1,
                unit_price=price,
                total_price=line_total(1, price),
            ))

        invoice = models.Invoice(
            invoice_number=next_invoice_number(db, issued_at, attempt),
            patient_id=visit.patient_id,
            visit_id=visit.id,
            issue_date=issued_at,
            due_date=issued_at + timedelta(days=settings.invoice_due_days),
            discount_type=DiscountType(discount_type),
            discount_value=to_money(discount_value, "discount_value"),
            tax_percentage=to_percentage(tax_percentage),
            paid_amount=Decimal("0.000"),
            payment_status=PaymentStatus.PENDING,
            created_by=created_by,
            items=items,
        )
        _apply_totals(invoice, [(item.quantity, item.unit_price) for item in items])
        db.add(invoice)
        db.flush()
        return invoice

    invoice = _commit_numbered(db, stage, visit_id=visit_id)
    db.refresh(invoice)
    logger.info("invoice_generated", invoice_id=invoice.id, invoice_number=invoice.invoice_number,
                visit_id=visit_id, items=len(invoice.items), total_amount=str(invoice.total_amount))
    compliance_logger.log_event(
        user_id=created_by, action='INVOICE_GENERATED', category='BILLING',
        resource_type='invoice', resource_id=invoice.id, visit_id=visit_id,
        details=f"{invoice.invoice_number} total {invoice.total_amount:.3f}",
    )
    return invoice


def _stage_item(db: Session, item: schemas.InvoiceItemCreate, position: int) -> models.InvoiceItem:
    if item.service_id is not None and crud.get_service(db, item.service_id) is None:
        raise MissingReferenceError(f"Service {item.service_id} not found.", field="service_id")
    price = to_money(item.unit_price, "unit_price")
    return models.InvoiceItem(
        service_id=item.service_id,
        position=position,
        description=item.description,
        quantity=item.quantity,
        unit_price=price,
        total_price=line_total(item.quantity, price),
    )


def create_manual_invoice(db: Session, data: schemas.InvoiceCreate, created_by: Optional[str] = None,
                          now: Optional[datetime] = None) -> models.Invoice:
    """Invoice with staff-entered line items, not tied to a visit."""
    settings = get_settings()
    issued_at = normalize_timestamp(now, settings) if now else _clinic_now()

    def stage(attempt: int) -> models.Invoice:
        if crud.get_patient(db, data.patient_id) is None:
            raise MissingReferenceError(f"Patient {data.patient_id} not found.", field="patient_id")
        items = [_stage_item(db, item, position) for position, item in enumerate(data.items)]
        due_date = normalize_timestamp(data.due_date, settings) if data.due_date else issued_at + timedelta(days=settings.invoice_due_days)
        invoice = models.Invoice(
            invoice_number=next_invoice_number(db, issued_at, attempt),
            patient_id=data.patient_id,
            issue_date=issued_at,
            due_date=due_date,
            discount_type=data.discount_type,
            discount_value=to_money(data.discount_value, "discount_value"),
            tax_percentage=data.tax_percentage,
            paid_amount=Decimal("0.000"),
            payment_status=PaymentStatus.PENDING,
            notes=data.notes,
            created_by=created_by,
            items=items,
        )
        _apply_totals(invoice, [(item.quantity, item.unit_price) for item in items])
        db.add(invoice)
        db.flush()
        return invoice

    invoice = _commit_numbered(db, stage)
    db.refresh(invoice)
    logger.info("invoice_created", invoice_id=invoice.id, invoice_number=invoice.invoice_number,
                items=len(invoice.items), total_amount=str(invoice.total_amount))
    compliance_logger.log_event(
        user_id=created_by, action='INVOICE_CREATED', category='BILLING',
        resource_type='invoice', resource_id=invoice.id,
        details=f"{invoice.invoice_number} total {invoice.total_amount:.3f}",
    )
    return invoice


def _load_for_update(db: Session, invoice_id: str) -> models.Invoice:
    invoice = crud.get_invoice(db, invoice_id, for_update=True)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found.", field="invoice_id")
    return invoice


def _ensure_items_editable(db: Session, invoice: models.Invoice) -> None:
    if invoice.payment_status == PaymentStatus.REFUNDED:
        raise InvalidStateTransitionError(f"Invoice {invoice.invoice_number} is refunded.", field="payment_status")
    if crud.count_payments_for_invoice(db, invoice.id) > 0:
        raise InvalidStateTransitionError(
            f"Invoice {invoice.invoice_number} already has payments; items are frozen.", field="items",
        )


def _recompute(invoice: models.Invoice) -> None:
    _apply_totals(invoice, [(i.quantity, i.unit_price) for i in invoice.items])
    invoice.payment_status = derive_payment_status(invoice.paid_amount, invoice.total_amount, invoice.payment_status)


def _find_item(invoice: models.Invoice, item_id: str) -> models.InvoiceItem:
    for item in invoice.items:
        if item.id == item_id:
            return item
    raise NotFoundError(f"Item {item_id} not found on invoice {invoice.invoice_number}.", field="item_id")


def add_invoice_item(db: Session, invoice_id: str, item: schemas.InvoiceItemCreate,
                     actor: Optional[str] = None) -> models.Invoice:
    """Append a line item and recompute totals. Only allowed before any payment."""
    try:
        invoice = _load_for_update(db, invoice_id)
        _ensure_items_editable(db, invoice)
        invoice.items.append(_stage_item(db, item, len(invoice.items)))
        _recompute(invoice)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info("invoice_item_added", invoice_id=invoice.id, items=len(invoice.items), total_amount=str(invoice.total_amount))
    compliance_logger.log_event(
        user_id=actor, action='INVOICE_ITEM_ADDED', category='BILLING',
        resource_type='invoice', resource_id=invoice.id, details=item.description,
    )
    return invoice


def update_invoice_item(db: Session, invoice_id: str, item_id: str, changes: schemas.InvoiceItemUpdate,
                        actor: Optional[str] = None) -> models.Invoice:
    """Adjust a line item's description, quantity or price. Same guards as adding."""
    try:
        invoice = _load_for_update(db, invoice_id)
        _ensure_items_editable(db, invoice)
        item = _find_item(invoice, item_id)
        if changes.description is not None:
            item.description = changes.description
        if changes.quantity is not None:
            item.quantity = changes.quantity
        if changes.unit_price is not None:
            item.unit_price = to_money(changes.unit_price, "unit_price")
        item.total_price = line_total(item.quantity, item.unit_price)
        _recompute(invoice)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info("invoice_item_updated", invoice_id=invoice.id, item_id=item_id, total_amount=str(invoice.total_amount))
    compliance_logger.log_event(
        user_id=actor, action='INVOICE_ITEM_UPDATED', category='BILLING',
        resource_type='invoice', resource_id=invoice.id, item_id=item_id,
    )
    return invoice


def remove_invoice_item(db: Session, invoice_id: str, item_id: str, actor: Optional[str] = None) -> models.Invoice:
    """Drop a line item; the remaining items are renumbered and totals recomputed."""
    try:
        invoice = _load_for_update(db, invoice_id)
        _ensure_items_editable(db, invoice)
        invoice.items.remove(_find_item(invoice, item_id))
        for position, item in enumerate(invoice.items):
            item.position = position
        _recompute(invoice)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info("invoice_item_removed", invoice_id=invoice.id, item_id=item_id, items=len(invoice.items),
                total_amount=str(invoice.total_amount))
    compliance_logger.log_event(
        user_id=actor, action='INVOICE_ITEM_REMOVED', category='BILLING', severity='WARNING',
        resource_type='invoice', resource_id=invoice.id, item_id=item_id,
    )
    return invoice


def mark_invoice_refunded(db: Session, invoice_id: str, actor: Optional[str] = None,
                          reason: Optional[str] = None) -> models.Invoice:
    """Operator action: flag a paid or partly paid invoice as REFUNDED."""
    try:
        invoice = _load_for_update(db, invoice_id)
        if invoice.payment_status == PaymentStatus.REFUNDED:
            raise InvalidStateTransitionError(f"Invoice {invoice.invoice_number} is already refunded.", field="payment_status")
        if invoice.paid_amount <= 0:
            raise InvalidStateTransitionError(f"Invoice {invoice.invoice_number} has no payments to refund.", field="payment_status")
        previous = invoice.payment_status
        invoice.payment_status = PaymentStatus.REFUNDED
        if reason:
            invoice.notes = f"{invoice.notes}\nREFUNDED: {reason}" if invoice.notes else f"REFUNDED: {reason}"
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    db.refresh(invoice)
    logger.info("invoice_refunded", invoice_id=invoice.id, previous_status=previous.value)
    compliance_logger.log_event(
        user_id=actor, action='INVOICE_REFUNDED', category='BILLING', severity='WARNING',
        resource_type='invoice', resource_id=invoice.id, details=reason,
    )
    return invoice


def get_invoice(db: Session, invoice_id: str) -> models.Invoice:
    invoice = crud.get_invoice(db, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found.", field="invoice_id")
    return invoice


def get_outstanding_balance(db: Session) -> Tuple[int, Decimal]:
    count, outstanding = crud.get_outstanding_balance(db)
    return count, quantize(outstanding)
