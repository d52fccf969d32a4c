# clinicdesk/services/slot_service.py
from datetime import date, datetime
from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud
from ..config import Settings, get_settings
from ..errors import MissingReferenceError
from .calendar_policy import is_closed_day, slot_candidates
from .conflict_service import Interval, booked_intervals, find_overlap

logger = structlog.get_logger(__name__)


def available_slots(
    db: Session,
    target_date: date,
    doctor_id: Optional[str] = None,
    exclude_appointment_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> List[datetime]:
    """
    Free slot starts for a day, ascending. Recomputed from stored appointments
    on every call.

    - On the closed weekday the result is empty.
    - With ``doctor_id``, a slot is free when that doctor has no booking overlapping it.
    - Without it, a slot is free when at least one doctor is free. A clinic with
      no doctors at all gets every candidate back.
    - ``exclude_appointment_id`` ignores one booking, so a reschedule can offer
      the appointment's own time.
    """
    settings = settings or get_settings()

    if is_closed_day(target_date, settings):
        logger.info("slots_closed_day", date=target_date.isoformat())
        return []

    if doctor_id is not None:
        if crud.get_doctor(db, doctor_id) is None:
            raise MissingReferenceError(f"Doctor {doctor_id} not found.", field="doctor_id")
        doctor_ids = [doctor_id]
    else:
        # Without active doctors, fall back to whoever holds bookings that day
        doctor_ids = crud.get_active_doctor_ids(db) or sorted(
            crud.get_doctor_ids_with_bookings(db, target_date, settings.max_appointment_minutes)
        )

    candidates = slot_candidates(target_date, settings)
    if not doctor_ids:
        return candidates

    bookings: Dict[str, List[Interval]] = {
        doc_id: booked_intervals(db, doc_id, target_date, exclude_appointment_id) for doc_id in doctor_ids
    }

    slots = [
        candidate for candidate in candidates
        if any(find_overlap(bookings[doc_id], candidate, settings.slot_minutes) is None for doc_id in doctor_ids)
    ]
    logger.info(
        "slots_computed",
        date=target_date.isoformat(),
        doctor_id=doctor_id,
        candidates=len(candidates),
        available=len(slots),
    )
    return slots
