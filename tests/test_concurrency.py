# tests/test_concurrency.py
"""Concurrent writers against a file-backed SQLite database, one session per thread."""
import threading
import time
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from clinicdesk import models, schemas
from clinicdesk.database import build_engine, create_tables
from clinicdesk.errors import OverPaymentError, SchedulingConflictError
from clinicdesk.models import PaymentMethod
from clinicdesk.services import appointment_service, invoice_service, payment_ledger

from conftest import at

# Long enough for the other thread to reach the same point if nothing serialises them
WINDOW_SECONDS = 0.3


@pytest.fixture
def FileSession(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    create_tables(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def seeded(FileSession):
    with FileSession() as session:
        doctor = models.User(username="dr_salem", role=models.UserRole.DOCTOR)
        patient = models.Patient(name="Fatima Al-Sabah")
        session.add_all([doctor, patient])
        session.commit()
        return doctor.id, patient.id


def run_concurrently(*calls):
    """Start every call at once; return each result or the exception it raised."""
    start = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, call):
        start.wait()
        try:
            results[index] = call()
        except Exception as exc:
            results[index] = exc

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


def slowed(func):
    def wrapper(*args, **kwargs):
        result = func(*args, **kwargs)
        time.sleep(WINDOW_SECONDS)
        return result
    return wrapper


def test_overlapping_bookings_race_and_only_one_wins(FileSession, seeded, monkeypatch):
    doctor_id, patient_id = seeded
    monkeypatch.setattr(appointment_service, "has_conflict", slowed(appointment_service.has_conflict))

    def booking(start):
        def call():
            with FileSession() as session:
                return appointment_service.create_appointment(session, schemas.AppointmentCreate(
                    patient_id=patient_id, doctor_id=doctor_id, start_time=start, duration_minutes=30,
                )).id
        return call

    results = run_concurrently(booking(at(10, 0)), booking(at(10, 15)))

    assert sum(isinstance(r, str) for r in results) == 1
    assert sum(isinstance(r, SchedulingConflictError) for r in results) == 1
    with FileSession() as session:
        assert session.query(models.Appointment).count() == 1


def test_concurrent_payments_cannot_over_pay(FileSession, seeded, monkeypatch):
    _, patient_id = seeded
    with FileSession() as session:
        invoice_id = invoice_service.create_manual_invoice(session, schemas.InvoiceCreate(
            patient_id=patient_id,
            items=[schemas.InvoiceItemCreate(description="Crown", unit_price=Decimal("100.000"))],
        ), now=datetime(2026, 10, 19, 12, 0)).id
    monkeypatch.setattr(payment_ledger, "derive_payment_status", slowed(payment_ledger.derive_payment_status))

    def payment():
        with FileSession() as session:
            return payment_ledger.record_payment(session, invoice_id, Decimal("60.000"), PaymentMethod.CASH).id

    results = run_concurrently(payment, payment)

    assert sum(isinstance(r, str) for r in results) == 1
    assert sum(isinstance(r, OverPaymentError) for r in results) == 1
    with FileSession() as session:
        invoice = session.get(models.Invoice, invoice_id)
        payments = session.query(models.Payment).filter_by(invoice_id=invoice_id).all()
        assert invoice.paid_amount == Decimal("60.000")
        assert sum(p.amount for p in payments) == Decimal("60.000")
        assert invoice.payment_status == models.PaymentStatus.PARTIAL
