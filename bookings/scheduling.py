"""
Time-threshold policy for class instances.

An instance is scheduled as a calendar date plus a local clock time; these
helpers combine the two in the studio time zone and answer the questions
both the booking service and booking screens ask about it.
"""

from datetime import date, datetime, time, timedelta
from typing import Optional

from django.conf import settings
from django.utils import timezone

from .types import DEFAULT_BOOKING_CLOSE_AFTER_START_HOURS, DEFAULT_CANCELLATION_CUTOFF_MINUTES


def get_instance_datetime(date_obj: date, time_obj: time) -> datetime:
    """Combine date and time into timezone-aware datetime."""
    dt = datetime.combine(date_obj, time_obj)
    return timezone.make_aware(dt)


def cancellation_cutoff() -> timedelta:
    """How long before the start cancellations stop being accepted."""
    minutes = getattr(
        settings,
        'BOOKING_CANCELLATION_CUTOFF_MINUTES',
        DEFAULT_CANCELLATION_CUTOFF_MINUTES,
    )
    return timedelta(minutes=minutes)


def booking_close_window() -> timedelta:
    """How long after the start new bookings are still accepted."""
    hours = getattr(
        settings,
        'BOOKING_CLOSE_AFTER_START_HOURS',
        DEFAULT_BOOKING_CLOSE_AFTER_START_HOURS,
    )
    return timedelta(hours=hours)


def is_instance_past(date_obj: date, time_obj: time, now: Optional[datetime] = None) -> bool:
    """True once the instance has started."""
    now = now or timezone.now()
    return get_instance_datetime(date_obj, time_obj) < now


def is_booking_closed(date_obj: date, time_obj: time, now: Optional[datetime] = None) -> bool:
    """True once the booking window after the start has elapsed."""
    now = now or timezone.now()
    return now > get_instance_datetime(date_obj, time_obj) + booking_close_window()


def is_within_cancellation_cutoff(
    date_obj: date,
    time_obj: time,
    now: Optional[datetime] = None
) -> bool:
    """True from the cancellation cutoff before the start onwards."""
    now = now or timezone.now()
    return now > get_instance_datetime(date_obj, time_obj) - cancellation_cutoff()


def should_mark_as_attended(date_obj: date, time_obj: time, now: Optional[datetime] = None) -> bool:
    """Confirmed bookings on an instance that has started count as attended."""
    return is_instance_past(date_obj, time_obj, now)
