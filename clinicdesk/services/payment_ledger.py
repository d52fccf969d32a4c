# clinicdesk/services/payment_ledger.py
"""
Payment ledger: the only code that changes an invoice's ``paid_amount``.

Every mutation locks the invoice row (SELECT ... FOR UPDATE) for the
transaction and writes the new ``paid_amount`` with a conditional UPDATE on
the value it was computed from, so a lost update is impossible even where the
row lock is not honoured. ``payment_status`` is re-derived in the same
statement through ``derive_payment_status``. Over-payment is rejected before anything is
written; a delta that would drive ``paid_amount`` negative is a DataIntegrity
error and is logged at error level.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..crud import CRUDError
from ..errors import (
    ConcurrentUpdateError, DataIntegrityError, EngineError, InvalidAmountError, NotFoundError, OverPaymentError,
)
from ..models import PaymentMethod
from .calendar_policy import normalize_timestamp
from .invoice_totals import ZERO, derive_payment_status, quantize, to_money

logger = structlog.get_logger(__name__)


def _lock_invoice(db: Session, invoice_id: str) -> models.Invoice:
    invoice = crud.get_invoice(db, invoice_id, for_update=True)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found.", field="invoice_id")
    return invoice


def _positive_amount(amount) -> Decimal:
    value = to_money(amount, "amount")
    if value <= 0:
        raise InvalidAmountError("Payment amount must be greater than zero.", field="amount")
    return value


def _check_paid(invoice: models.Invoice, new_paid: Decimal) -> Decimal:
    if new_paid < 0:
        logger.error("ledger_negative_paid", invoice_id=invoice.id, paid_amount=str(invoice.paid_amount),
                     new_paid=str(new_paid))
        raise DataIntegrityError(
            f"Adjustment would make paid amount of invoice {invoice.invoice_number} negative ({new_paid}).",
            field="paid_amount",
        )
    if new_paid > invoice.total_amount:
        raise OverPaymentError(
            f"Payment exceeds the remaining balance of {quantize(invoice.total_amount - invoice.paid_amount):.3f}.",
            field="amount",
            remaining=f"{quantize(invoice.total_amount - invoice.paid_amount):.3f}",
        )
    return quantize(new_paid)


def _apply_delta(db: Session, invoice: models.Invoice, delta: Decimal, reset_refund: bool = False) -> None:
    """
    Move ``paid_amount`` by ``delta`` as a compare-and-swap against the value
    the checks were made on. If another writer got there first the invoice is
    re-read and the over-payment and negative checks run again.
    """
    retries = get_settings().ledger_update_retries
    for attempt in range(retries):
        expected = invoice.paid_amount
        new_paid = _check_paid(invoice, expected + delta)
        status = derive_payment_status(new_paid, invoice.total_amount, invoice.payment_status, reset_refund=reset_refund)
        if crud.compare_and_set_paid(db, invoice.id, expected, new_paid, status):
            db.expire(invoice, ["paid_amount", "payment_status"])
            return
        logger.warning("ledger_write_contended", invoice_id=invoice.id, attempt=attempt + 1)
        db.refresh(invoice)
    raise ConcurrentUpdateError(
        f"Invoice {invoice.invoice_number} changed concurrently; try again.", field="paid_amount",
    )


def record_payment(
    db: Session,
    invoice_id: str,
    amount: Decimal,
    method: PaymentMethod,
    received_by: Optional[str] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> models.Payment:
    """
    Record a payment against an invoice.

    Rejects amounts above the remaining balance with OverPayment; nothing is
    applied in that case. A new payment lifts a REFUNDED status back to the
    derived one.
    """
    value = _positive_amount(amount)
    try:
        invoice = _lock_invoice(db, invoice_id)
        _apply_delta(db, invoice, value, reset_refund=True)
        payment = models.Payment(
            invoice_id=invoice.id,
            amount=value,
            method=PaymentMethod(method),
            reference=reference,
            notes=notes,
            received_by=received_by,
        )
        if paid_at is not None:
            payment.paid_at = normalize_timestamp(paid_at, get_settings())
        crud.add_payment(db, payment)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.error("payment_insert_failed", invoice_id=invoice_id, error=str(e.orig))
        raise CRUDError("A database error occurred while recording the payment.")

    db.refresh(payment)
    db.refresh(invoice)
    logger.info("payment_recorded", payment_id=payment.id, invoice_id=invoice.id, amount=f"{value:.3f}",
                paid_amount=f"{invoice.paid_amount:.3f}", payment_status=invoice.payment_status.value)
    compliance_logger.log_event(
        user_id=received_by, action='PAYMENT_RECORDED', category='BILLING',
        resource_type='payment', resource_id=payment.id, invoice_id=invoice.id,
        details=f"{value:.3f} via {payment.method.value}",
    )
    return payment


def _load_payment(db: Session, payment_id: str) -> models.Payment:
    payment = crud.get_payment(db, payment_id)
    if payment is None:
        raise NotFoundError(f"Payment {payment_id} not found.", field="payment_id")
    return payment


def update_payment(
    db: Session,
    payment_id: str,
    amount: Optional[Decimal] = None,
    method: Optional[PaymentMethod] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> models.Payment:
    """Correct a payment. A changed amount is applied to the invoice as a delta."""
    new_amount = _positive_amount(amount) if amount is not None else None
    try:
        payment = _load_payment(db, payment_id)
        invoice = _lock_invoice(db, payment.invoice_id)
        old_amount = payment.amount
        if new_amount is not None and new_amount != old_amount:
            _apply_delta(db, invoice, new_amount - old_amount)
            payment.amount = new_amount
        if method is not None:
            payment.method = PaymentMethod(method)
        if reference is not None:
            payment.reference = reference
        if notes is not None:
            payment.notes = notes
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.error("payment_update_failed", payment_id=payment_id, error=str(e.orig))
        raise CRUDError("A database error occurred while updating the payment.")

    db.refresh(payment)
    logger.info("payment_updated", payment_id=payment.id, invoice_id=payment.invoice_id,
                previous_amount=f"{old_amount:.3f}", amount=f"{payment.amount:.3f}")
    compliance_logger.log_event(
        user_id=actor, action='PAYMENT_UPDATED', category='BILLING',
        resource_type='payment', resource_id=payment.id, invoice_id=payment.invoice_id,
        details=f"{old_amount:.3f} -> {payment.amount:.3f}",
    )
    return payment


def delete_payment(db: Session, payment_id: str, actor: Optional[str] = None) -> models.Invoice:
    """Remove a payment and subtract it from the invoice. Returns the updated invoice."""
    try:
        payment = _load_payment(db, payment_id)
        invoice = _lock_invoice(db, payment.invoice_id)
        amount = payment.amount
        _apply_delta(db, invoice, -amount)
        crud.remove_payment(db, payment)
        db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.error("payment_delete_failed", payment_id=payment_id, error=str(e.orig))
        raise CRUDError("A database error occurred while deleting the payment.")

    db.refresh(invoice)
    logger.info("payment_deleted", payment_id=payment_id, invoice_id=invoice.id, amount=f"{amount:.3f}",
                paid_amount=f"{invoice.paid_amount:.3f}")
    compliance_logger.log_event(
        user_id=actor, action='PAYMENT_DELETED', category='BILLING', severity='WARNING',
        resource_type='payment', resource_id=payment_id, invoice_id=invoice.id,
        details=f"{amount:.3f} removed",
    )
    return invoice


def list_payments(db: Session, invoice_id: str):
    if crud.get_invoice(db, invoice_id) is None:
        raise NotFoundError(f"Invoice {invoice_id} not found.", field="invoice_id")
    return crud.get_payments_for_invoice(db, invoice_id)


# ==================== Reconciliation ====================

def reconcile_invoice(db: Session, invoice_id: str, fix: bool = False) -> Optional[schemas.LedgerInconsistency]:
    """
    Compare an invoice's recorded paid amount and status with its payments.
    Returns the inconsistency, or None when the ledger agrees. With ``fix`` the
    invoice is rewritten from its payments (the caller commits).
    """
    invoice = _lock_invoice(db, invoice_id) if fix else crud.get_invoice(db, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found.", field="invoice_id")

    payments_total = quantize(sum((p.amount for p in crud.get_payments_for_invoice(db, invoice.id)), ZERO))
    expected_status = derive_payment_status(payments_total, invoice.total_amount, invoice.payment_status)
    if payments_total == invoice.paid_amount and expected_status == invoice.payment_status:
        return None

    inconsistency = schemas.LedgerInconsistency(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        recorded_paid=quantize(invoice.paid_amount),
        payments_total=payments_total,
        recorded_status=invoice.payment_status,
        expected_status=expected_status,
    )
    logger.warning("ledger_inconsistency", **inconsistency.model_dump(mode="json"))
    if fix:
        invoice.paid_amount = payments_total
        invoice.payment_status = expected_status
    return inconsistency


def audit_ledger(db: Session, fix: bool = False, actor: Optional[str] = None) -> schemas.LedgerReport:
    """Check every invoice against its payments; optionally repair drift in one transaction."""
    invoice_ids = crud.get_all_invoice_ids(db)
    try:
        inconsistencies = [
            found for found in (reconcile_invoice(db, invoice_id, fix=fix) for invoice_id in invoice_ids)
            if found is not None
        ]
        if fix:
            db.commit()
    except (EngineError, CRUDError):
        db.rollback()
        raise

    report = schemas.LedgerReport(
        checked_invoices=len(invoice_ids),
        inconsistencies=inconsistencies,
        fixed=fix and bool(inconsistencies),
    )
    logger.info("ledger_audited", checked_invoices=report.checked_invoices,
                inconsistencies=len(report.inconsistencies), fixed=report.fixed)
    if fix and inconsistencies:
        compliance_logger.log_event(
            user_id=actor, action='LEDGER_REPAIRED', category='BILLING', severity='WARNING',
            details=f"{len(inconsistencies)} invoice(s) rewritten from payments",
        )
    return report
