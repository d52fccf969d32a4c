# tests/conftest.py
import os

# Must be set before clinicdesk is imported: settings and the engine are built at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "testing"

from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from clinicdesk import models, schemas
from clinicdesk.database import create_tables, drop_tables, engine, get_db
from clinicdesk.main import app
from clinicdesk.services import appointment_service, visit_service

# Monday; 2026-10-23 is the Friday the clinic is closed
CLINIC_DAY = date(2026, 10, 19)
CLOSED_DAY = date(2026, 10, 23)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def at(hour: int, minute: int = 0, day: date = CLINIC_DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute)


def book(db, doctor, patient, start, duration=30, service=None, created_by=None):
    data = schemas.AppointmentCreate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        service_id=service.id if service else None,
        start_time=start,
        duration_minutes=duration,
    )
    return appointment_service.create_appointment(db, data, created_by=created_by)


@pytest.fixture
def db():
    create_tables(engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        drop_tables(engine)


@pytest.fixture
def client(db):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def doctor(db):
    return _add(db, models.User(username="dr_salem", full_name="Dr. Salem Al-Rashid", role=models.UserRole.DOCTOR))


@pytest.fixture
def second_doctor(db):
    return _add(db, models.User(username="dr_noura", full_name="Dr. Noura Hamad", role=models.UserRole.DOCTOR))


@pytest.fixture
def receptionist(db):
    return _add(db, models.User(username="front_desk", full_name="Front Desk", role=models.UserRole.RECEPTION))


@pytest.fixture
def patient(db):
    return _add(db, models.Patient(name="Fatima Al-Sabah", phone="+96550000000"))


@pytest.fixture
def cleaning(db):
    return _add(db, models.Service(code="CLN", name="Scaling and polishing", price=Decimal("15.000"), duration_minutes=30))


@pytest.fixture
def root_canal(db):
    return _add(db, models.Service(code="RCT", name="Root canal treatment", price=Decimal("90.000"), duration_minutes=60))


@pytest.fixture
def two_procedure_visit(db, doctor, patient, cleaning, root_canal):
    """Visit with procedures priced 15.000 and 90.000."""
    return visit_service.create_visit(db, schemas.VisitCreate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        procedures=[
            schemas.Procedure(service_id=cleaning.id),
            schemas.Procedure(service_id=root_canal.id, tooth="36", notes="first session"),
        ],
    ))
