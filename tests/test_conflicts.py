# tests/test_conflicts.py
import pytest

from clinicdesk import crud, models
from clinicdesk.errors import InvalidAmountError, SchedulingConflictError
from clinicdesk.services import appointment_service
from clinicdesk.services.conflict_service import find_overlap, has_conflict, intervals_overlap

from conftest import at, book


def test_touching_intervals_do_not_overlap():
    assert not intervals_overlap(at(10, 0), at(10, 30), at(10, 30), at(11, 0))
    assert not intervals_overlap(at(10, 30), at(11, 0), at(10, 0), at(10, 30))
    assert intervals_overlap(at(10, 0), at(10, 30), at(10, 29), at(11, 0))
    assert intervals_overlap(at(10, 0), at(12, 0), at(10, 30), at(11, 0))


def test_find_overlap_returns_first_hit():
    booked = [(at(9, 0), at(9, 30)), (at(10, 0), at(10, 30))]
    assert find_overlap(booked, at(10, 15), 20) == (at(10, 0), at(10, 30))
    assert find_overlap(booked, at(9, 30), 30) is None


def test_overlapping_booking_is_rejected_and_touching_one_accepted(db, doctor, patient):
    book(db, doctor, patient, at(10, 0), 30)

    assert has_conflict(db, doctor.id, at(10, 15), 20)
    with pytest.raises(SchedulingConflictError) as exc:
        book(db, doctor, patient, at(10, 15), 20)
    assert exc.value.field == "start_time"

    assert not has_conflict(db, doctor.id, at(10, 30), 30)
    accepted = book(db, doctor, patient, at(10, 30), 30)
    assert accepted.end_time == at(11, 0)


def test_other_doctors_bookings_do_not_conflict(db, doctor, second_doctor, patient):
    book(db, doctor, patient, at(10, 0), 30)
    assert not has_conflict(db, second_doctor.id, at(10, 0), 30)
    book(db, second_doctor, patient, at(10, 0), 30)


def test_cancelled_and_no_show_appointments_free_the_time(db, doctor, patient):
    first = book(db, doctor, patient, at(11, 0), 30)
    second = book(db, doctor, patient, at(12, 0), 30)
    appointment_service.cancel_appointment(db, first.id, reason="patient called")
    appointment_service.mark_no_show(db, second.id)

    assert not has_conflict(db, doctor.id, at(11, 0), 30)
    assert not has_conflict(db, doctor.id, at(12, 0), 30)


def test_completed_appointments_still_hold_time(db, doctor, patient):
    appointment = book(db, doctor, patient, at(13, 0), 30)
    appointment_service.complete_appointment(db, appointment.id)
    assert has_conflict(db, doctor.id, at(13, 0), 30)


def test_excluded_appointment_is_ignored(db, doctor, patient):
    appointment = book(db, doctor, patient, at(14, 0), 60)
    assert has_conflict(db, doctor.id, at(14, 30), 30)
    assert not has_conflict(db, doctor.id, at(14, 30), 30, exclude_appointment_id=appointment.id)


def test_no_two_booked_appointments_overlap(db, doctor, patient):
    attempts = [(at(9, 0), 45), (at(9, 30), 30), (at(9, 45), 15), (at(10, 0), 60), (at(10, 30), 30), (at(11, 0), 30)]
    for start, duration in attempts:
        try:
            book(db, doctor, patient, start, duration)
        except SchedulingConflictError:
            pass

    booked = sorted(
        (a.start_time, a.end_time)
        for a in db.query(models.Appointment).filter_by(doctor_id=doctor.id).all()
    )
    assert len(booked) == 4
    for (s1, e1), (s2, e2) in zip(booked, booked[1:]):
        assert not intervals_overlap(s1, e1, s2, e2)


def test_duration_is_capped(db, doctor, patient):
    with pytest.raises(InvalidAmountError) as exc:
        book(db, doctor, patient, at(9, 0), 721)
    assert exc.value.field == "duration_minutes"


def test_overlap_scan_is_bounded_below_by_the_longest_booking(db, doctor, patient):
    all_day = book(db, doctor, patient, at(9, 0), 720)

    # Starts 11h59m before the window but still reaches into it
    assert has_conflict(db, doctor.id, at(20, 30), 30)
    found = crud.get_booked_appointments(
        db, doctor.id, starts_before=at(21, 0), ends_after=at(20, 59), max_duration_minutes=720,
    )
    assert [a.id for a in found] == [all_day.id]

    # A tighter bound excludes it in SQL
    assert crud.get_booked_appointments(
        db, doctor.id, starts_before=at(21, 0), ends_after=at(20, 59), max_duration_minutes=60,
    ) == []
