"""
Data types and constants for the class booking system.

This module contains:
- Status vocabularies and the capacity-counting predicate
- DTOs (Data Transfer Objects) for service layer operations
- The ServiceResult wrapper returned across the service boundary
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional
from decimal import Decimal


BOOKING_STATUS_PENDING = 'pending'
BOOKING_STATUS_CONFIRMED = 'confirmed'
BOOKING_STATUS_CANCELLED = 'cancelled'
BOOKING_STATUS_COMPLETED = 'completed'
BOOKING_STATUS_ATTENDED = 'attended'
BOOKING_STATUS_NO_SHOW = 'no-show'

BOOKING_STATUSES = (
    BOOKING_STATUS_PENDING,
    BOOKING_STATUS_CONFIRMED,
    BOOKING_STATUS_CANCELLED,
    BOOKING_STATUS_COMPLETED,
    BOOKING_STATUS_ATTENDED,
    BOOKING_STATUS_NO_SHOW,
)

# Statuses that occupy a seat against the instance capacity.
COUNTING_STATUSES = frozenset({BOOKING_STATUS_PENDING, BOOKING_STATUS_CONFIRMED})

DEFAULT_BOOKING_STATUS = BOOKING_STATUS_PENDING

INSTANCE_STATUSES = (
    'scheduled',
    'in-progress',
    'completed',
    'cancelled',
    'full',
    'waitlist',
)

COLLECTION_COURSES = 'courses'
COLLECTION_INSTANCES = 'instances'
COLLECTION_BOOKINGS = 'bookings'

DEFAULT_CANCELLATION_CUTOFF_MINUTES = 30
DEFAULT_BOOKING_CLOSE_AFTER_START_HOURS = 2

DEFAULT_PAGE_SIZE = 10
COURSE_SORT_FIELDS = ('course_name', 'price_per_class', 'duration_minutes', 'capacity')


def counts_toward_capacity(status: Optional[str]) -> bool:
    """Return True if a booking in ``status`` occupies a seat."""
    return status in COUNTING_STATUSES


@dataclass
class BookingUpdateData:
    """DTO for booking update operations."""
    status: Optional[str] = None


@dataclass
class BookingDetails:
    """A booking joined with its class instance and course."""
    booking: Any
    instance: Any
    course: Any


@dataclass
class CourseSearchParams:
    """DTO for course catalog searches."""
    query: Optional[str] = None
    course_type: Optional[str] = None
    instructor: Optional[str] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None
    sort_by: Optional[str] = None
    sort_order: str = 'asc'
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


@dataclass
class CourseSearchResults:
    """One page of a course catalog search."""
    courses: List[Any] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    total_pages: int = 0
    has_next_page: bool = False
    has_previous_page: bool = False


@dataclass
class ServiceResult:
    """
    Outcome of a service operation: either a value or one typed error.

    Exactly one of ``value``/``error`` is meaningful; ``value`` may
    legitimately be None for operations with nothing to return.
    """
    value: Any = None
    error: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None
