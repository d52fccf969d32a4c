# clinicdesk/services/conflict_service.py
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud
from ..config import get_settings
from .calendar_policy import appointment_end

logger = structlog.get_logger(__name__)

Interval = Tuple[datetime, datetime]


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap: [a0, a1) and [b0, b1) overlap iff a0 < b1 and b0 < a1.
    Touching endpoints do not overlap."""
    return start_a < end_b and start_b < end_a


def find_overlap(intervals: Iterable[Interval], start: datetime, duration_minutes: int) -> Optional[Interval]:
    """Return the first interval overlapping [start, start + duration), or None."""
    end = appointment_end(start, duration_minutes)
    for booked_start, booked_end in intervals:
        if intervals_overlap(start, end, booked_start, booked_end):
            return booked_start, booked_end
    return None


def booked_intervals(db: Session, doctor_id: str, day: date,
                     exclude_appointment_id: Optional[str] = None) -> List[Interval]:
    """Intervals held by the doctor that can touch the given day, ascending."""
    day_start = datetime.combine(day, time.min)
    appointments = crud.get_booked_appointments(
        db, doctor_id,
        starts_before=day_start + timedelta(days=1),
        ends_after=day_start,
        exclude_appointment_id=exclude_appointment_id,
        max_duration_minutes=get_settings().max_appointment_minutes,
    )
    return [(a.start_time, a.end_time) for a in appointments]


def find_conflicting_appointment(db: Session, doctor_id: str, proposed_start: datetime,
                                 duration_minutes: int, exclude_appointment_id: Optional[str] = None):
    proposed_end = appointment_end(proposed_start, duration_minutes)
    candidates = crud.get_booked_appointments(
        db, doctor_id,
        starts_before=proposed_end,
        ends_after=proposed_start,
        exclude_appointment_id=exclude_appointment_id,
        max_duration_minutes=get_settings().max_appointment_minutes,
    )
    for appointment in candidates:
        if intervals_overlap(proposed_start, proposed_end, appointment.start_time, appointment.end_time):
            return appointment
    return None


def has_conflict(db: Session, doctor_id: str, proposed_start: datetime, duration_minutes: int,
                 exclude_appointment_id: Optional[str] = None) -> bool:
    """True when [proposed_start, proposed_start + duration) overlaps any SCHEDULED,
    CONFIRMED or COMPLETED appointment of the doctor other than ``exclude_appointment_id``.

    Callers that write afterwards must hold the doctor lock (``crud.lock_doctors``)
    in the same transaction.
    """
    conflicting = find_conflicting_appointment(db, doctor_id, proposed_start, duration_minutes, exclude_appointment_id)
    if conflicting is not None:
        logger.debug(
            "booking_conflict",
            doctor_id=doctor_id,
            proposed_start=proposed_start.isoformat(),
            duration_minutes=duration_minutes,
            conflicting_appointment_id=conflicting.id,
        )
        return True
    return False
