"""
Service layer for booking business logic.

BookingService owns the seat counter of every class instance: it is the
only writer of ``current_bookings`` and changes it solely through batch
writes that also carry the booking change responsible for it.

Every public operation returns a ServiceResult; errors are raised
internally as BookingError subclasses and converted at the boundary.

Capacity and duplicate checks are read-then-decide against the store with
no lock held between the reads and the batch write. Two requests racing for
the last seat can both pass the check, leaving the counter above capacity;
recalculation does not repair that, it only realigns the counter with the
bookings that exist.
"""

import functools
import logging
from collections import Counter
from typing import Any, Callable, List, Optional

from django.utils import timezone

from .errors import (
    BookingCreationError,
    BookingError,
    BookingNotFound,
    CancellationTooLate,
    CourseNotFound,
    DuplicateBooking,
    InstanceFull,
    InstanceNotFound,
    InvalidStatus,
    MissingField,
    StoreError,
)
from .scheduling import cancellation_cutoff, is_within_cancellation_cutoff, should_mark_as_attended
from .store import WRITE_ADD, WRITE_DELETE, WRITE_UPDATE, DocumentStore, Increment, WriteOperation
from .types import (
    BOOKING_STATUS_ATTENDED,
    BOOKING_STATUS_CANCELLED,
    BOOKING_STATUS_CONFIRMED,
    BOOKING_STATUSES,
    COLLECTION_BOOKINGS,
    COLLECTION_COURSES,
    COLLECTION_INSTANCES,
    COUNTING_STATUSES,
    DEFAULT_BOOKING_STATUS,
    BookingUpdateData,
    ServiceResult,
    counts_toward_capacity,
)

logger = logging.getLogger(__name__)


def service_result(operation: Callable) -> Callable:
    """Run ``operation`` and wrap its outcome in a ServiceResult."""

    @functools.wraps(operation)
    def wrapper(*args, **kwargs) -> ServiceResult:
        try:
            value = operation(*args, **kwargs)
        except StoreError as error:
            logger.warning("%s failed: %s %s", operation.__name__, error.code, error.message)
            return ServiceResult(error=error)
        except BookingError as error:
            logger.info("%s rejected: %s", operation.__name__, error.code)
            return ServiceResult(error=error)
        return ServiceResult(value=value)

    return wrapper


def _seat_delta(old_status: Optional[str], new_status: Optional[str]) -> int:
    """Change in occupied seats when a booking moves between statuses."""
    return int(counts_toward_capacity(new_status)) - int(counts_toward_capacity(old_status))


def _counter_operation(instance_id: Any, delta: int) -> WriteOperation:
    """Batch entry moving an instance's seat counter by ``delta``, floored at zero."""
    increment = Increment(delta) if delta > 0 else Increment(delta, floor=0)
    return WriteOperation(
        WRITE_UPDATE,
        COLLECTION_INSTANCES,
        doc_id=instance_id,
        data={'current_bookings': increment}
    )


def _status_operation(booking_id: Any, status: str) -> WriteOperation:
    return WriteOperation(
        WRITE_UPDATE,
        COLLECTION_BOOKINGS,
        doc_id=booking_id,
        data={'status': status}
    )


def _validate_status(status: str) -> None:
    if status not in BOOKING_STATUSES:
        raise InvalidStatus(f"Unknown booking status '{status}'")


def is_blank(value: Any) -> bool:
    """Whether a required identifier is missing or only whitespace."""
    return value is None or (isinstance(value, str) and not value.strip())


class BookingService:
    """
    Creates, updates, cancels and reconciles class bookings.

    Args:
        store: Document store handle; a DocumentStore by default
        clock: Callable returning the current aware datetime
    """

    def __init__(self, store: Optional[DocumentStore] = None, clock: Optional[Callable] = None):
        self.store = store or DocumentStore()
        self.clock = clock or timezone.now

    @service_result
    def create_booking(self, user_id: str, instance_id: Any, status: Optional[str] = None):
        """
        Book a seat on a class instance.

        Args:
            user_id: Identifier of the booking user
            instance_id: Identifier of the ClassInstance
            status: Initial status; 'pending' when omitted

        Returns:
            ServiceResult with the created Booking

        Errors:
            MissingField, InvalidStatus, InstanceNotFound, CourseNotFound,
            InstanceFull, DuplicateBooking, StoreError, BookingCreationError
        """
        if is_blank(user_id):
            raise MissingField('user_id')
        if is_blank(instance_id):
            raise MissingField('instance_id')

        status = status or DEFAULT_BOOKING_STATUS
        _validate_status(status)

        instance = self._get_instance(instance_id)
        self._check_seat_available(instance, user_id)

        operations = [
            WriteOperation(
                WRITE_ADD,
                COLLECTION_BOOKINGS,
                data={'instance_id': instance.pk, 'user_id': user_id, 'status': status}
            )
        ]
        if counts_toward_capacity(status):
            operations.append(_counter_operation(instance.pk, 1))

        added_ids = self.store.batch_write(operations)

        booking = self.store.get_document(COLLECTION_BOOKINGS, added_ids[0]) if added_ids else None
        if booking is None:
            raise BookingCreationError()

        logger.info(
            "Created booking %s for user %s on instance %s [%s]",
            booking.pk, user_id, instance.pk, status
        )
        return booking

    @service_result
    def update_booking(self, booking_id: Any, update_data: BookingUpdateData):
        """
        Change a booking's status, moving the seat counter when the booking
        starts or stops holding a seat.

        Moving a booking back into a seat-holding status is checked like a
        new booking: the instance must have room and the user must not hold
        another seat on it.

        Returns:
            ServiceResult with the updated Booking

        Errors:
            InvalidStatus, BookingNotFound, InstanceNotFound, CourseNotFound,
            InstanceFull, DuplicateBooking, StoreError
        """
        new_status = update_data.status
        if new_status is not None:
            _validate_status(new_status)

        booking = self._get_booking(booking_id)

        if new_status is None or new_status == booking.status:
            if new_status is not None:
                self.store.batch_write([_status_operation(booking.pk, new_status)])
            return self._get_booking(booking.pk)

        instance = self._get_instance(booking.instance_id)
        delta = _seat_delta(booking.status, new_status)

        if delta > 0:
            self._check_seat_available(instance, booking.user_id)

        operations = [_status_operation(booking.pk, new_status)]
        if delta:
            operations.append(_counter_operation(instance.pk, delta))

        self.store.batch_write(operations)

        logger.info(
            "Booking %s moved %s -> %s (seat change %+d on instance %s)",
            booking.pk, booking.status, new_status, delta, instance.pk
        )
        return self._get_booking(booking.pk)

    @service_result
    def cancel_booking(self, booking_id: Any):
        """
        Cancel a booking and release its seat.

        Cancellation is refused from the cutoff before the class start
        onwards, whatever the booking's status.

        Returns:
            ServiceResult with the cancelled Booking

        Errors:
            BookingNotFound, InstanceNotFound, CancellationTooLate, StoreError
        """
        booking = self._get_booking(booking_id)
        instance = self._get_instance(booking.instance_id)

        if is_within_cancellation_cutoff(instance.date, instance.time, now=self.clock()):
            minutes = int(cancellation_cutoff().total_seconds() // 60)
            raise CancellationTooLate(
                f'Cannot cancel booking within {minutes} minutes of class start time'
            )

        operations = [_status_operation(booking.pk, BOOKING_STATUS_CANCELLED)]
        if counts_toward_capacity(booking.status):
            operations.append(_counter_operation(instance.pk, -1))

        self.store.batch_write(operations)

        logger.info("Cancelled booking %s on instance %s", booking.pk, instance.pk)
        return self._get_booking(booking.pk)

    @service_result
    def delete_booking(self, booking_id: Any):
        """
        Remove a booking document for administrative cleanup.

        The seat counter is left alone; run a recalculation afterwards if the
        booking was holding a seat.
        """
        booking = self._get_booking(booking_id)
        self.store.batch_write([
            WriteOperation(WRITE_DELETE, COLLECTION_BOOKINGS, doc_id=booking.pk)
        ])
        logger.info("Deleted booking %s (status %s)", booking.pk, booking.status)
        return None

    @service_result
    def recalculate_instance_bookings(self, instance_id: Any):
        """
        Realign an instance's seat counter with its seat-holding bookings.

        Writes only when the stored counter differs from the true count, so
        repeated calls are idempotent.

        Returns:
            ServiceResult with the true count
        """
        if is_blank(instance_id):
            raise MissingField('instance_id')

        instance = self._get_instance(instance_id)
        seat_holders = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[
                ('instance_id', '==', instance.pk),
                ('status', 'in', sorted(COUNTING_STATUSES)),
            ]
        )
        true_count = len(seat_holders)

        if instance.current_bookings != true_count:
            self.store.batch_write([
                WriteOperation(
                    WRITE_UPDATE,
                    COLLECTION_INSTANCES,
                    doc_id=instance.pk,
                    data={'current_bookings': true_count}
                )
            ])
            logger.info(
                "Instance %s seat counter corrected %d -> %d",
                instance.pk, instance.current_bookings, true_count
            )
        return true_count

    @service_result
    def recalculate_all_instance_bookings(self):
        """
        Realign the seat counter of every instance in one batch.

        Instances whose counter already matches are not written.

        Returns:
            ServiceResult with the number of instances corrected
        """
        instances = self.store.query_documents(COLLECTION_INSTANCES)
        seat_holders = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('status', 'in', sorted(COUNTING_STATUSES))]
        )
        counts = Counter(booking.instance_id for booking in seat_holders)

        operations: List[WriteOperation] = []
        for instance in instances:
            true_count = counts.get(instance.pk, 0)
            if instance.current_bookings != true_count:
                operations.append(WriteOperation(
                    WRITE_UPDATE,
                    COLLECTION_INSTANCES,
                    doc_id=instance.pk,
                    data={'current_bookings': true_count}
                ))

        if operations:
            self.store.batch_write(operations)
        logger.info(
            "Recalculated %d instance(s), corrected %d",
            len(instances), len(operations)
        )
        return len(operations)

    @service_result
    def mark_past_bookings_as_attended(self):
        """
        Move confirmed bookings on instances that have started to 'attended'.

        Seat counters are not touched: attended bookings keep their place in
        the occupancy figure of a past instance until it is recalculated.

        Returns:
            ServiceResult with the number of bookings transitioned
        """
        confirmed = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('status', '==', BOOKING_STATUS_CONFIRMED)]
        )
        if not confirmed:
            return 0

        instance_ids = sorted({booking.instance_id for booking in confirmed})
        instances = self.store.query_documents(
            COLLECTION_INSTANCES,
            where=[('id', 'in', instance_ids)]
        )
        instances_by_id = {instance.pk: instance for instance in instances}

        now = self.clock()
        operations = []
        for booking in confirmed:
            instance = instances_by_id.get(booking.instance_id)
            if instance and should_mark_as_attended(instance.date, instance.time, now=now):
                operations.append(_status_operation(booking.pk, BOOKING_STATUS_ATTENDED))

        if operations:
            self.store.batch_write(operations)
            logger.info("Marked %d past booking(s) as attended", len(operations))
        return len(operations)

    def _check_seat_available(self, instance, user_id):
        """
        Refuse a new seat on a full instance, or for a user who already
        holds one there.
        """
        course = self._get_course(instance.course_id)
        if instance.current_bookings >= course.capacity:
            raise InstanceFull()

        existing = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[
                ('user_id', '==', user_id),
                ('instance_id', '==', instance.pk),
                ('status', 'in', sorted(COUNTING_STATUSES)),
            ],
            limit=1
        )
        if existing:
            raise DuplicateBooking()

    def _get_booking(self, booking_id):
        booking = self.store.get_document(COLLECTION_BOOKINGS, booking_id)
        if booking is None:
            raise BookingNotFound()
        return booking

    def _get_instance(self, instance_id):
        instance = self.store.get_document(COLLECTION_INSTANCES, instance_id)
        if instance is None:
            raise InstanceNotFound()
        return instance

    def _get_course(self, course_id):
        course = self.store.get_document(COLLECTION_COURSES, course_id)
        if course is None:
            raise CourseNotFound()
        return course
