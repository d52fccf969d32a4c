# tests/test_appointment_lifecycle.py
from decimal import Decimal

import pytest

from clinicdesk import models, schemas
from clinicdesk.errors import (
    InvalidStateTransitionError, MissingReferenceError, NotFoundError,
    OutsideBusinessHoursError, SchedulingConflictError,
)
from clinicdesk.models import AppointmentStatus, VisitStatus
from clinicdesk.services import appointment_service

from conftest import CLOSED_DAY, at, book


def test_created_appointment_is_scheduled(db, doctor, patient, receptionist):
    appointment = book(db, doctor, patient, at(9, 0), 30, created_by=receptionist.id)
    assert appointment.status == AppointmentStatus.SCHEDULED
    assert appointment.created_by == receptionist.id
    assert appointment.end_time == at(9, 30)


def test_duration_defaults_to_the_service_duration(db, doctor, patient, root_canal):
    appointment = appointment_service.create_appointment(db, schemas.AppointmentCreate(
        patient_id=patient.id, doctor_id=doctor.id, service_id=root_canal.id, start_time=at(11, 0),
    ))
    assert appointment.duration_minutes == 60


@pytest.mark.parametrize("start, duration", [
    (at(8, 30), 30),
    (at(20, 45), 30),
    (at(10, 0, day=CLOSED_DAY), 30),
])
def test_bookings_outside_business_hours_are_rejected(db, doctor, patient, start, duration):
    with pytest.raises(OutsideBusinessHoursError):
        book(db, doctor, patient, start, duration)
    assert db.query(models.Appointment).count() == 0


def test_unknown_references_are_rejected(db, doctor, patient):
    with pytest.raises(MissingReferenceError) as exc:
        appointment_service.create_appointment(db, schemas.AppointmentCreate(
            patient_id="missing", doctor_id=doctor.id, start_time=at(9, 0),
        ))
    assert exc.value.field == "patient_id"

    with pytest.raises(MissingReferenceError) as exc:
        appointment_service.create_appointment(db, schemas.AppointmentCreate(
            patient_id=patient.id, doctor_id=patient.id, start_time=at(9, 0),
        ))
    assert exc.value.field == "doctor_id"


def test_reschedule_into_conflict_leaves_appointment_unchanged(db, doctor, patient):
    book(db, doctor, patient, at(10, 0), 30)
    moving = book(db, doctor, patient, at(11, 0), 30)

    with pytest.raises(SchedulingConflictError):
        appointment_service.reschedule_appointment(
            db, moving.id, schemas.AppointmentReschedule(start_time=at(10, 15)),
        )

    db.expire_all()
    stored = db.get(models.Appointment, moving.id)
    assert stored.start_time == at(11, 0)
    assert stored.duration_minutes == 30
    assert stored.status == AppointmentStatus.SCHEDULED


def test_resize_into_next_booking_conflicts(db, doctor, patient):
    first = book(db, doctor, patient, at(10, 0), 30)
    book(db, doctor, patient, at(10, 30), 30)
    with pytest.raises(SchedulingConflictError):
        appointment_service.reschedule_appointment(
            db, first.id, schemas.AppointmentReschedule(duration_minutes=45),
        )


def test_reschedule_may_overlap_its_own_old_interval(db, doctor, patient):
    appointment = book(db, doctor, patient, at(10, 0), 30)
    moved = appointment_service.reschedule_appointment(
        db, appointment.id, schemas.AppointmentReschedule(start_time=at(10, 15), duration_minutes=45),
    )
    assert moved.start_time == at(10, 15)
    assert moved.end_time == at(11, 0)


def test_reschedule_to_another_doctor(db, doctor, second_doctor, patient):
    book(db, second_doctor, patient, at(10, 0), 30)
    appointment = book(db, doctor, patient, at(10, 0), 30)

    with pytest.raises(SchedulingConflictError):
        appointment_service.reschedule_appointment(
            db, appointment.id, schemas.AppointmentReschedule(doctor_id=second_doctor.id),
        )

    moved = appointment_service.reschedule_appointment(
        db, appointment.id, schemas.AppointmentReschedule(doctor_id=second_doctor.id, start_time=at(10, 30)),
    )
    assert moved.doctor_id == second_doctor.id


def test_confirm_then_cancel_with_reason(db, doctor, patient):
    appointment = book(db, doctor, patient, at(9, 0), 30)
    confirmed = appointment_service.confirm_appointment(db, appointment.id)
    assert confirmed.status == AppointmentStatus.CONFIRMED

    with pytest.raises(InvalidStateTransitionError):
        appointment_service.confirm_appointment(db, appointment.id)

    cancelled = appointment_service.cancel_appointment(db, appointment.id, reason="patient travelling")
    assert cancelled.status == AppointmentStatus.CANCELLED
    assert "patient travelling" in cancelled.notes


@pytest.mark.parametrize("finish", ["cancel_appointment", "mark_no_show"])
def test_terminal_states_reject_every_transition(db, doctor, patient, finish):
    appointment = book(db, doctor, patient, at(9, 0), 30)
    getattr(appointment_service, finish)(db, appointment.id)

    for operation in ("confirm_appointment", "cancel_appointment", "mark_no_show", "complete_appointment"):
        with pytest.raises(InvalidStateTransitionError):
            getattr(appointment_service, operation)(db, appointment.id)
    with pytest.raises(InvalidStateTransitionError):
        appointment_service.reschedule_appointment(
            db, appointment.id, schemas.AppointmentReschedule(start_time=at(12, 0)),
        )


def test_transition_table():
    assert appointment_service.allowed_transitions(AppointmentStatus.COMPLETED) == frozenset()
    assert AppointmentStatus.CONFIRMED not in appointment_service.allowed_transitions(AppointmentStatus.CONFIRMED)
    assert AppointmentStatus.COMPLETED in appointment_service.allowed_transitions(AppointmentStatus.CONFIRMED)


def test_complete_creates_exactly_one_visit(db, doctor, patient, root_canal):
    appointment = book(db, doctor, patient, at(16, 0), 60, service=root_canal)
    visit = appointment_service.complete_appointment(db, appointment.id)

    assert visit.appointment_id == appointment.id
    assert visit.status == VisitStatus.IN_PROGRESS
    assert visit.procedures == [{"serviceId": root_canal.id, "tooth": None, "surfaces": None, "notes": None}]
    assert visit.total_amount == Decimal("90.000")
    assert db.get(models.Appointment, appointment.id).status == AppointmentStatus.COMPLETED

    with pytest.raises(InvalidStateTransitionError):
        appointment_service.complete_appointment(db, appointment.id)
    assert db.query(models.Visit).filter_by(appointment_id=appointment.id).count() == 1


def test_complete_without_service_opens_an_empty_visit(db, doctor, patient):
    appointment = book(db, doctor, patient, at(17, 0), 30)
    visit = appointment_service.complete_appointment(db, appointment.id)
    assert visit.procedures == []
    assert visit.total_amount == Decimal("0.000")


def test_unknown_appointment(db):
    with pytest.raises(NotFoundError):
        appointment_service.confirm_appointment(db, "missing")
