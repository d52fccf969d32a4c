# clinicdesk/services/calendar_policy.py
"""Clinic calendar rules: business hours, the weekly closed day and slot granularity.

All functions are pure; they read the policy from ``Settings`` (injectable for
tests) and work in naive clinic-local wall time.
"""
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from ..config import Settings, get_settings


def _policy(settings: Optional[Settings]) -> Settings:
    return settings or get_settings()


def is_closed_day(day: date, settings: Optional[Settings] = None) -> bool:
    return day.weekday() == _policy(settings).closed_weekday


def business_window(day: date, settings: Optional[Settings] = None) -> Tuple[datetime, datetime]:
    policy = _policy(settings)
    return datetime.combine(day, policy.business_open), datetime.combine(day, policy.business_close)


def slot_length(settings: Optional[Settings] = None) -> timedelta:
    return timedelta(minutes=_policy(settings).slot_minutes)


def slot_candidates(day: date, settings: Optional[Settings] = None) -> List[datetime]:
    """Every slot start in the business window whose full slot fits before closing.
    Empty on the closed weekday."""
    if is_closed_day(day, settings):
        return []
    opening, closing = business_window(day, settings)
    step = slot_length(settings)
    candidates = []
    current = opening
    while current + step <= closing:
        candidates.append(current)
        current += step
    return candidates


def appointment_end(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)


def is_within_business_hours(start: datetime, duration_minutes: int, settings: Optional[Settings] = None) -> bool:
    if is_closed_day(start.date(), settings):
        return False
    opening, closing = business_window(start.date(), settings)
    return opening <= start and appointment_end(start, duration_minutes) <= closing


def normalize_timestamp(value: datetime, settings: Optional[Settings] = None) -> datetime:
    """Convert to naive clinic-local time at minute precision. Naive input is
    already clinic-local."""
    if value.tzinfo is None:
        return value.replace(second=0, microsecond=0)
    local = value.astimezone(ZoneInfo(_policy(settings).clinic_timezone))
    return local.replace(tzinfo=None, second=0, microsecond=0)

