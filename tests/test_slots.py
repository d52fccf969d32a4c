# tests/test_slots.py
import pytest

from clinicdesk.errors import MissingReferenceError
from clinicdesk.services.conflict_service import intervals_overlap
from clinicdesk.services.slot_service import available_slots

from conftest import CLINIC_DAY, CLOSED_DAY, at, book


def test_closed_day_has_no_slots(db, doctor):
    assert available_slots(db, CLOSED_DAY, doctor.id) == []
    assert available_slots(db, CLOSED_DAY) == []


def test_free_doctor_gets_every_candidate(db, doctor):
    slots = available_slots(db, CLINIC_DAY, doctor.id)
    assert len(slots) == 24
    assert slots[0] == at(9, 0)
    assert slots == sorted(slots)


def test_booked_interval_is_subtracted(db, doctor, patient):
    book(db, doctor, patient, at(10, 0), 60)
    slots = available_slots(db, CLINIC_DAY, doctor.id)
    assert at(10, 0) not in slots
    assert at(10, 30) not in slots
    assert at(9, 30) in slots
    assert at(11, 0) in slots
    assert len(slots) == 22


def test_partial_overlap_blocks_the_slot(db, doctor, patient):
    book(db, doctor, patient, at(10, 15), 20)
    slots = available_slots(db, CLINIC_DAY, doctor.id)
    assert at(10, 0) not in slots
    assert at(10, 30) not in slots
    assert at(11, 0) in slots


def test_every_returned_slot_can_be_booked(db, doctor, patient):
    slots = available_slots(db, CLINIC_DAY, doctor.id)
    booked = [book(db, doctor, patient, slot, 30) for slot in slots]

    assert available_slots(db, CLINIC_DAY, doctor.id) == []
    intervals = sorted((a.start_time, a.end_time) for a in booked)
    for (s1, e1), (s2, e2) in zip(intervals, intervals[1:]):
        assert not intervals_overlap(s1, e1, s2, e2)


def test_without_doctor_a_slot_is_free_if_any_doctor_is(db, doctor, second_doctor, patient):
    book(db, doctor, patient, at(10, 0), 30)
    assert at(10, 0) in available_slots(db, CLINIC_DAY)
    assert at(10, 0) not in available_slots(db, CLINIC_DAY, doctor.id)

    book(db, second_doctor, patient, at(10, 0), 30)
    assert at(10, 0) not in available_slots(db, CLINIC_DAY)


def test_clinic_without_doctors_lists_every_candidate(db):
    assert len(available_slots(db, CLINIC_DAY)) == 24


def test_own_booking_can_be_excluded_for_rescheduling(db, doctor, patient):
    appointment = book(db, doctor, patient, at(15, 0), 30)
    assert at(15, 0) not in available_slots(db, CLINIC_DAY, doctor.id)
    assert at(15, 0) in available_slots(db, CLINIC_DAY, doctor.id, exclude_appointment_id=appointment.id)


def test_unknown_doctor_is_a_missing_reference(db, doctor):
    with pytest.raises(MissingReferenceError) as exc:
        available_slots(db, CLINIC_DAY, "no-such-doctor")
    assert exc.value.field == "doctor_id"
