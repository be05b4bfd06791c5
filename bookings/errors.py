"""
Error taxonomy for booking operations.

Each error carries a stable ``code`` (mirrored to API clients), a
human-readable ``message`` and the HTTP status the API layer answers with.
"""

from rest_framework import status


class BookingError(Exception):
    """Base class for every error a booking operation can report."""

    code = 'BOOKING_ERROR'
    default_message = 'Booking operation failed'
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message=None, code=None):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def as_dict(self):
        return {'code': self.code, 'message': self.message}

    def __repr__(self):
        return f'{self.__class__.__name__}(code={self.code!r}, message={self.message!r})'


class MissingField(BookingError):
    code = 'MISSING_FIELD'
    default_message = 'Required field is missing'

    def __init__(self, field_name):
        self.field_name = field_name
        super().__init__(f'{field_name} is required')


class InvalidStatus(BookingError):
    code = 'INVALID_STATUS'
    default_message = 'Unknown booking status'


class InstanceNotFound(BookingError):
    code = 'INSTANCE_NOT_FOUND'
    default_message = 'Class instance not found'
    http_status = status.HTTP_404_NOT_FOUND


class CourseNotFound(BookingError):
    code = 'COURSE_NOT_FOUND'
    default_message = 'Course not found'
    http_status = status.HTTP_404_NOT_FOUND


class BookingNotFound(BookingError):
    code = 'BOOKING_NOT_FOUND'
    default_message = 'Booking not found'
    http_status = status.HTTP_404_NOT_FOUND


class InstanceFull(BookingError):
    code = 'INSTANCE_FULL'
    default_message = 'This class is at full capacity'
    http_status = status.HTTP_409_CONFLICT


class DuplicateBooking(BookingError):
    code = 'DUPLICATE_BOOKING'
    default_message = 'You already have an active booking for this class'
    http_status = status.HTTP_409_CONFLICT


class CancellationTooLate(BookingError):
    code = 'CANCELLATION_TOO_LATE'
    default_message = 'Cannot cancel booking within 30 minutes of class start time'


class BookingCreationError(BookingError):
    code = 'BOOKING_CREATION_ERROR'
    default_message = 'Failed to create booking'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class StoreError(BookingError):
    """An underlying document store failure, keeping the store's own code."""

    code = 'STORE_ERROR'
    default_message = 'Unknown error occurred'
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
