"""
Tests for the class booking system.

Tests cover:
- Course, ClassInstance and Booking models and managers
- Time-threshold policy
- Document store adapter (queries, atomic batches, error wrapping)
- BookingService (create, update, cancel, recalculate, attendance)
- BookingDirectory and CourseCatalog
- API endpoints
- Management commands
"""

import random
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from .directory import BookingDirectory, CourseCatalog
from .errors import (
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
from .models import Booking, ClassInstance, Course
from .scheduling import (
    get_instance_datetime,
    is_booking_closed,
    is_instance_past,
    is_within_cancellation_cutoff,
)
from .services import BookingService
from .store import WRITE_ADD, WRITE_UPDATE, DocumentStore, Increment, WriteOperation
from .types import (
    BOOKING_STATUSES,
    COLLECTION_BOOKINGS,
    COLLECTION_INSTANCES,
    BookingUpdateData,
    CourseSearchParams,
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=dt_timezone.utc)


def fixed_clock():
    return NOW


def make_course(**kwargs):
    fields = {
        'course_name': 'Morning Flow',
        'course_type': 'Vinyasa',
        'description': 'Energising sequence to start the day',
        'capacity': 10,
        'duration_minutes': 60,
        'price_per_class': Decimal('15.00'),
        'instructor': 'Maya',
        'studio_room': 'Studio A',
    }
    fields.update(kwargs)
    return Course.objects.create(**fields)


def make_instance(course=None, starts_in=timedelta(days=1), now=NOW, **kwargs):
    """Create an instance starting ``starts_in`` after ``now``."""
    start = timezone.localtime(now + starts_in)
    fields = {
        'instructor': 'Maya',
        'date': start.date(),
        'time': start.time(),
        'current_bookings': 0,
    }
    if course is not None:
        fields['course'] = course
    fields.update(kwargs)
    return ClassInstance.objects.create(**fields)


def make_booking(instance, user_id='user-a', status='confirmed'):
    return Booking.objects.create(instance=instance, user_id=user_id, status=status)


class CourseModelTests(TestCase):
    """Test Course model and validation."""

    def test_create_course(self):
        """Test creating a course."""
        course = make_course(course_name="Yin Yoga", capacity=12)

        self.assertEqual(course.course_name, "Yin Yoga")
        self.assertEqual(course.capacity, 12)
        self.assertTrue(course.valid)

    def test_capacity_must_be_positive(self):
        """Test that a course needs at least one seat."""
        with self.assertRaises(ValidationError):
            make_course(capacity=0)


class ClassInstanceModelTests(TestCase):
    """Test ClassInstance model."""

    def test_start_datetime_combines_date_and_time(self):
        """Test the aware start datetime property."""
        course = make_course()
        instance = make_instance(course, starts_in=timedelta(hours=5))

        self.assertEqual(instance.start_datetime, NOW + timedelta(hours=5))
        self.assertEqual(instance.status, 'scheduled')

    def test_counter_cannot_be_negative(self):
        """Test seat counter validation."""
        with self.assertRaises(ValidationError):
            make_instance(make_course(), current_bookings=-1)


class BookingModelTests(TestCase):
    """Test Booking model."""

    def setUp(self):
        self.instance = make_instance(make_course())

    def test_counting_statuses(self):
        """Only pending and confirmed bookings hold a seat."""
        holding = {
            status_value
            for status_value in BOOKING_STATUSES
            if make_booking(self.instance, user_id=f'u-{status_value}', status=status_value).counts_toward_capacity
        }
        self.assertEqual(holding, {'pending', 'confirmed'})

    def test_booking_requires_user(self):
        """Test that a blank user id is rejected."""
        with self.assertRaises(ValidationError):
            make_booking(self.instance, user_id='  ')

    def test_unknown_status_rejected(self):
        with self.assertRaises(ValidationError):
            make_booking(self.instance, status='waitlisted')


class BookingManagerTests(TestCase):
    """Test Booking custom manager."""

    def setUp(self):
        course = make_course()
        self.instance = make_instance(course)
        self.other = make_instance(course, starts_in=timedelta(days=2))

        make_booking(self.instance, 'user-a', 'pending')
        make_booking(self.instance, 'user-b', 'confirmed')
        make_booking(self.instance, 'user-c', 'cancelled')
        make_booking(self.other, 'user-a', 'attended')

    def test_counting_filter(self):
        self.assertEqual(Booking.objects.counting().count(), 2)

    def test_for_instance_filter(self):
        self.assertEqual(Booking.objects.for_instance(self.instance.id).count(), 3)

    def test_for_user_newest_first(self):
        bookings = list(Booking.objects.for_user('user-a'))
        self.assertEqual(len(bookings), 2)
        self.assertEqual(bookings[0].instance_id, self.other.id)

    def test_active_for(self):
        self.assertTrue(Booking.objects.active_for('user-a', self.instance.id).exists())
        self.assertFalse(Booking.objects.active_for('user-a', self.other.id).exists())
        self.assertFalse(Booking.objects.active_for('user-c', self.instance.id).exists())


class SchedulingPolicyTests(TestCase):
    """Test time thresholds around an instance start."""

    def setUp(self):
        start = timezone.localtime(NOW)
        self.date = start.date()
        self.time = start.time()

    def test_instance_datetime(self):
        self.assertEqual(get_instance_datetime(self.date, self.time), NOW)

    def test_past(self):
        self.assertTrue(is_instance_past(self.date, self.time, now=NOW + timedelta(minutes=1)))
        self.assertFalse(is_instance_past(self.date, self.time, now=NOW - timedelta(minutes=1)))

    def test_booking_closes_two_hours_after_start(self):
        self.assertFalse(is_booking_closed(self.date, self.time, now=NOW + timedelta(minutes=119)))
        self.assertTrue(is_booking_closed(self.date, self.time, now=NOW + timedelta(minutes=121)))

    def test_cancellation_cutoff_thirty_minutes_before_start(self):
        self.assertFalse(is_within_cancellation_cutoff(self.date, self.time, now=NOW - timedelta(minutes=31)))
        self.assertTrue(is_within_cancellation_cutoff(self.date, self.time, now=NOW - timedelta(minutes=29)))
        self.assertTrue(is_within_cancellation_cutoff(self.date, self.time, now=NOW + timedelta(hours=1)))

    @override_settings(BOOKING_CANCELLATION_CUTOFF_MINUTES=60)
    def test_cancellation_cutoff_is_configurable(self):
        self.assertTrue(is_within_cancellation_cutoff(self.date, self.time, now=NOW - timedelta(minutes=45)))


class DocumentStoreTests(TestCase):
    """Test the document store adapter."""

    def setUp(self):
        self.store = DocumentStore()
        self.course = make_course()
        self.instance = make_instance(self.course, current_bookings=2)

    def test_get_missing_document(self):
        self.assertIsNone(self.store.get_document(COLLECTION_BOOKINGS, 4242))

    def test_unknown_collection(self):
        with self.assertRaises(StoreError) as ctx:
            self.store.get_document('users', 1)
        self.assertEqual(ctx.exception.code, 'UNKNOWN_COLLECTION')

    def test_query_filters_order_and_limit(self):
        make_booking(self.instance, 'user-a', 'pending')
        make_booking(self.instance, 'user-b', 'confirmed')
        make_booking(self.instance, 'user-c', 'cancelled')

        active = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('instance_id', '==', self.instance.id), ('status', 'in', ['pending', 'confirmed'])],
            order_by=[('user_id', 'desc')]
        )
        self.assertEqual([b.user_id for b in active], ['user-b', 'user-a'])

        not_cancelled = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('status', '!=', 'cancelled')],
            order_by=[('user_id', 'asc')],
            limit=1
        )
        self.assertEqual([b.user_id for b in not_cancelled], ['user-a'])

    def test_range_filter(self):
        later = make_instance(self.course, starts_in=timedelta(days=5))
        found = self.store.query_documents(
            COLLECTION_INSTANCES,
            where=[('date', '>=', later.date)]
        )
        self.assertEqual([i.id for i in found], [later.id])

    def test_unsupported_operator(self):
        with self.assertRaises(StoreError):
            self.store.query_documents(COLLECTION_BOOKINGS, where=[('status', 'like', 'p%')])

    def test_unknown_field_is_wrapped(self):
        with self.assertRaises(StoreError) as ctx:
            self.store.query_documents(COLLECTION_BOOKINGS, where=[('colour', '==', 'blue')])
        self.assertEqual(ctx.exception.code, 'GET_DOCUMENTS_ERROR')

    def test_batch_add_and_increment(self):
        added = self.store.batch_write([
            WriteOperation(WRITE_ADD, COLLECTION_BOOKINGS,
                           data={'instance_id': self.instance.id, 'user_id': 'user-a', 'status': 'pending'}),
            WriteOperation(WRITE_UPDATE, COLLECTION_INSTANCES, doc_id=self.instance.id,
                           data={'current_bookings': Increment(1)}),
        ])

        self.assertEqual(len(added), 1)
        self.assertTrue(Booking.objects.filter(pk=added[0], user_id='user-a').exists())
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 3)

    def test_floored_decrement(self):
        empty = make_instance(self.course, starts_in=timedelta(days=3), current_bookings=0)
        self.store.batch_write([
            WriteOperation(WRITE_UPDATE, COLLECTION_INSTANCES, doc_id=empty.id,
                           data={'current_bookings': Increment(-1, floor=0)}),
        ])
        empty.refresh_from_db()
        self.assertEqual(empty.current_bookings, 0)

    def test_batch_is_all_or_nothing(self):
        """A failing operation rolls back the ones before it."""
        with self.assertRaises(StoreError) as ctx:
            self.store.batch_write([
                WriteOperation(WRITE_ADD, COLLECTION_BOOKINGS,
                               data={'instance_id': self.instance.id, 'user_id': 'user-a', 'status': 'pending'}),
                WriteOperation(WRITE_UPDATE, COLLECTION_INSTANCES, doc_id=9999,
                               data={'current_bookings': Increment(1)}),
            ])

        self.assertEqual(ctx.exception.code, 'DOCUMENT_NOT_FOUND')
        self.assertEqual(Booking.objects.count(), 0)

    def test_database_error_is_wrapped(self):
        with mock.patch.object(Booking.objects, 'create', side_effect=DatabaseError('disk I/O error')):
            with self.assertRaises(StoreError) as ctx:
                self.store.batch_write([
                    WriteOperation(WRITE_ADD, COLLECTION_BOOKINGS,
                                   data={'instance_id': self.instance.id, 'user_id': 'user-a'}),
                ])

        self.assertEqual(ctx.exception.code, 'BATCH_WRITE_ERROR')
        self.assertEqual(ctx.exception.message, 'disk I/O error')

    def test_malformed_id_finds_nothing(self):
        """An id that cannot be a primary key is a missing document, not a store failure."""
        self.assertIsNone(self.store.get_document(COLLECTION_BOOKINGS, 'not-a-number'))
        self.assertIsNone(self.store.get_document(COLLECTION_INSTANCES, None))

    def test_programming_errors_are_not_wrapped(self):
        """Only persistence failures become StoreError; other bugs propagate."""
        with mock.patch.object(Booking.objects, 'create', side_effect=TypeError('unexpected keyword')):
            with self.assertRaises(TypeError):
                self.store.batch_write([
                    WriteOperation(WRITE_ADD, COLLECTION_BOOKINGS,
                                   data={'instance_id': self.instance.id, 'user_id': 'user-a'}),
                ])

        self.assertEqual(Booking.objects.count(), 0)


class CreateBookingTests(TestCase):
    """Test BookingService.create_booking."""

    def setUp(self):
        self.service = BookingService(clock=fixed_clock)
        self.course = make_course(capacity=3)
        self.instance = make_instance(self.course)

    def test_last_seat_then_full(self):
        """A one-seat class takes one booking and refuses the next."""
        course = make_course(course_name="Private Session", capacity=1)
        instance = make_instance(course)

        first = self.service.create_booking('user-a', instance.id)
        self.assertTrue(first.ok)
        self.assertEqual(first.value.status, 'pending')
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 1)

        second = self.service.create_booking('user-b', instance.id)
        self.assertIsInstance(second.error, InstanceFull)
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 1)
        self.assertEqual(Booking.objects.for_instance(instance.id).count(), 1)

    def test_duplicate_active_booking(self):
        self.assertTrue(self.service.create_booking('user-a', self.instance.id).ok)

        result = self.service.create_booking('user-a', self.instance.id)

        self.assertIsInstance(result.error, DuplicateBooking)
        self.assertEqual(result.error.code, 'DUPLICATE_BOOKING')
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 1)

    def test_rebook_after_cancellation(self):
        first = self.service.create_booking('user-a', self.instance.id)
        self.assertTrue(self.service.cancel_booking(first.value.id).ok)

        again = self.service.create_booking('user-a', self.instance.id)

        self.assertTrue(again.ok)
        self.assertNotEqual(again.value.id, first.value.id)
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 1)

    def test_requested_status(self):
        result = self.service.create_booking('user-a', self.instance.id, status='confirmed')

        self.assertEqual(result.value.status, 'confirmed')
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 1)

    def test_non_counting_status_leaves_counter(self):
        result = self.service.create_booking('user-a', self.instance.id, status='no-show')

        self.assertTrue(result.ok)
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 0)

    def test_missing_fields(self):
        self.assertIsInstance(self.service.create_booking('', self.instance.id).error, MissingField)
        self.assertIsInstance(self.service.create_booking('user-a', None).error, MissingField)
        self.assertEqual(Booking.objects.count(), 0)

    def test_invalid_status(self):
        result = self.service.create_booking('user-a', self.instance.id, status='maybe')
        self.assertIsInstance(result.error, InvalidStatus)

    def test_instance_not_found(self):
        result = self.service.create_booking('user-a', 9999)
        self.assertIsInstance(result.error, InstanceNotFound)

    def test_course_not_found(self):
        orphan = make_instance(course_id=9999)
        result = self.service.create_booking('user-a', orphan.id)
        self.assertIsInstance(result.error, CourseNotFound)

    def test_store_failure_writes_nothing(self):
        with mock.patch.object(Booking.objects, 'create', side_effect=DatabaseError('connection lost')):
            result = self.service.create_booking('user-a', self.instance.id)

        self.assertIsInstance(result.error, StoreError)
        self.assertEqual(result.error.message, 'connection lost')
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 0)


class UpdateBookingTests(TestCase):
    """Test BookingService.update_booking."""

    def setUp(self):
        self.service = BookingService(clock=fixed_clock)
        self.course = make_course(capacity=2)
        self.instance = make_instance(self.course, starts_in=timedelta(days=2))

    def _book(self, user_id='user-a', status_value='confirmed'):
        return self.service.create_booking(user_id, self.instance.id, status=status_value).value

    def _counter(self):
        self.instance.refresh_from_db()
        return self.instance.current_bookings

    def test_confirmed_to_cancelled_releases_seat(self):
        booking = self._book()
        self.assertEqual(self._counter(), 1)

        result = self.service.update_booking(booking.id, BookingUpdateData(status='cancelled'))

        self.assertTrue(result.ok)
        self.assertEqual(result.value.status, 'cancelled')
        self.assertEqual(self._counter(), 0)

    def test_pending_to_confirmed_keeps_counter(self):
        booking = self._book(status_value='pending')

        result = self.service.update_booking(booking.id, BookingUpdateData(status='confirmed'))

        self.assertEqual(result.value.status, 'confirmed')
        self.assertEqual(self._counter(), 1)

    def test_cancelled_to_confirmed_takes_seat(self):
        booking = self._book(status_value='cancelled')
        self.assertEqual(self._counter(), 0)

        self.service.update_booking(booking.id, BookingUpdateData(status='confirmed'))

        self.assertEqual(self._counter(), 1)

    def test_reactivation_respects_capacity(self):
        cancelled = self._book('user-a', 'cancelled')
        self._book('user-b')
        self._book('user-c')

        result = self.service.update_booking(cancelled.id, BookingUpdateData(status='pending'))

        self.assertIsInstance(result.error, InstanceFull)
        self.assertEqual(self._counter(), 2)

    def test_reactivation_refuses_second_active_booking(self):
        old = self._book('user-a', 'cancelled')
        self._book('user-a', 'pending')

        result = self.service.update_booking(old.id, BookingUpdateData(status='confirmed'))

        self.assertIsInstance(result.error, DuplicateBooking)

    def test_decrement_floored_at_zero(self):
        booking = make_booking(self.instance, 'user-a', 'confirmed')

        self.service.update_booking(booking.id, BookingUpdateData(status='no-show'))

        self.assertEqual(self._counter(), 0)

    def test_no_status_is_noop(self):
        booking = self._book()

        result = self.service.update_booking(booking.id, BookingUpdateData())

        self.assertEqual(result.value.status, 'confirmed')
        self.assertEqual(self._counter(), 1)

    def test_booking_not_found(self):
        result = self.service.update_booking(9999, BookingUpdateData(status='confirmed'))
        self.assertIsInstance(result.error, BookingNotFound)

    def test_instance_not_found(self):
        booking = make_booking(make_instance(self.course), 'user-a', 'pending')
        ClassInstance.objects.filter(pk=booking.instance_id).delete()

        result = self.service.update_booking(booking.id, BookingUpdateData(status='cancelled'))

        self.assertIsInstance(result.error, InstanceNotFound)
        booking.refresh_from_db()
        self.assertEqual(booking.status, 'pending')

    def test_invalid_status(self):
        booking = self._book()
        result = self.service.update_booking(booking.id, BookingUpdateData(status='gone'))
        self.assertIsInstance(result.error, InvalidStatus)


class CancelBookingTests(TestCase):
    """Test BookingService.cancel_booking."""

    def setUp(self):
        self.service = BookingService(clock=fixed_clock)
        self.course = make_course()

    def test_cancel_releases_seat(self):
        instance = make_instance(self.course, starts_in=timedelta(hours=3))
        booking = self.service.create_booking('user-a', instance.id, status='confirmed').value

        result = self.service.cancel_booking(booking.id)

        self.assertTrue(result.ok)
        self.assertEqual(result.value.status, 'cancelled')
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 0)

    def test_cancel_too_late(self):
        """Ten minutes before class a confirmed booking can no longer be cancelled."""
        instance = make_instance(self.course, starts_in=timedelta(minutes=10))
        booking = self.service.create_booking('user-a', instance.id, status='confirmed').value

        result = self.service.cancel_booking(booking.id)

        self.assertIsInstance(result.error, CancellationTooLate)
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 1)
        booking.refresh_from_db()
        self.assertEqual(booking.status, 'confirmed')

    def test_cutoff_applies_to_every_status(self):
        instance = make_instance(self.course, starts_in=timedelta(minutes=20))
        for status_value in BOOKING_STATUSES:
            booking = make_booking(instance, f'user-{status_value}', status_value)
            result = self.service.cancel_booking(booking.id)
            self.assertIsInstance(result.error, CancellationTooLate)

    def test_cancelling_cancelled_booking_keeps_counter(self):
        instance = make_instance(self.course, current_bookings=1)
        make_booking(instance, 'user-b', 'confirmed')
        booking = make_booking(instance, 'user-a', 'cancelled')

        self.assertTrue(self.service.cancel_booking(booking.id).ok)

        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 1)

    def test_booking_not_found(self):
        self.assertIsInstance(self.service.cancel_booking(9999).error, BookingNotFound)

    def test_delete_booking(self):
        instance = make_instance(self.course)
        booking = make_booking(instance)

        self.assertTrue(self.service.delete_booking(booking.id).ok)
        self.assertFalse(Booking.objects.filter(pk=booking.id).exists())
        self.assertIsInstance(self.service.delete_booking(booking.id).error, BookingNotFound)


class RecalculateTests(TestCase):
    """Test seat counter recalculation."""

    def setUp(self):
        self.service = BookingService(clock=fixed_clock)
        self.course = make_course()

    def test_drift_is_repaired(self):
        instance = make_instance(self.course, current_bookings=5)
        make_booking(instance, 'user-a', 'confirmed')
        make_booking(instance, 'user-b', 'confirmed')
        make_booking(instance, 'user-c', 'pending')
        make_booking(instance, 'user-d', 'cancelled')

        result = self.service.recalculate_instance_bookings(instance.id)

        self.assertEqual(result.value, 3)
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 3)

    def test_second_run_writes_nothing(self):
        instance = make_instance(self.course, current_bookings=4)
        make_booking(instance, 'user-a', 'pending')

        self.service.recalculate_instance_bookings(instance.id)
        with mock.patch.object(self.service.store, 'batch_write',
                               wraps=self.service.store.batch_write) as batch_write:
            result = self.service.recalculate_instance_bookings(instance.id)

        self.assertEqual(result.value, 1)
        batch_write.assert_not_called()

    def test_instance_not_found(self):
        result = self.service.recalculate_instance_bookings(9999)
        self.assertIsInstance(result.error, InstanceNotFound)

    def test_recalculate_all_skips_matching(self):
        drifted = make_instance(self.course, current_bookings=2)
        empty_drifted = make_instance(self.course, starts_in=timedelta(days=2), current_bookings=1)
        matching = make_instance(self.course, starts_in=timedelta(days=3), current_bookings=1)
        make_booking(drifted, 'user-a', 'pending')
        make_booking(matching, 'user-a', 'confirmed')

        result = self.service.recalculate_all_instance_bookings()

        self.assertEqual(result.value, 2)
        for instance, expected in ((drifted, 1), (empty_drifted, 0), (matching, 1)):
            instance.refresh_from_db()
            self.assertEqual(instance.current_bookings, expected)

        self.assertEqual(self.service.recalculate_all_instance_bookings().value, 0)


class MarkAttendedTests(TestCase):
    """Test BookingService.mark_past_bookings_as_attended."""

    def setUp(self):
        self.service = BookingService(clock=fixed_clock)
        self.course = make_course()

    def test_confirmed_past_bookings_marked(self):
        past = make_instance(self.course, starts_in=-timedelta(hours=2), current_bookings=2)
        future = make_instance(self.course, starts_in=timedelta(days=1), current_bookings=1)
        attended = make_booking(past, 'user-a', 'confirmed')
        still_pending = make_booking(past, 'user-b', 'pending')
        upcoming = make_booking(future, 'user-a', 'confirmed')

        result = self.service.mark_past_bookings_as_attended()

        self.assertEqual(result.value, 1)
        attended.refresh_from_db()
        still_pending.refresh_from_db()
        upcoming.refresh_from_db()
        self.assertEqual(attended.status, 'attended')
        self.assertEqual(still_pending.status, 'pending')
        self.assertEqual(upcoming.status, 'confirmed')

        past.refresh_from_db()
        self.assertEqual(past.current_bookings, 2)

    def test_nothing_to_mark(self):
        self.assertEqual(self.service.mark_past_bookings_as_attended().value, 0)


class SequentialInvariantTests(TestCase):
    """Random sequences of operations keep the seat counter consistent."""

    USERS = ['user-a', 'user-b', 'user-c', 'user-d', 'user-e']

    def test_counter_matches_seat_holders(self):
        service = BookingService(clock=fixed_clock)
        course = make_course(capacity=3)
        instance = make_instance(course, starts_in=timedelta(days=2))
        rng = random.Random(20260302)

        for _ in range(150):
            booking_ids = list(Booking.objects.for_instance(instance.id).values_list('id', flat=True))
            action = rng.choice(['create', 'update', 'cancel'])

            if action == 'create' or not booking_ids:
                service.create_booking(
                    rng.choice(self.USERS),
                    instance.id,
                    status=rng.choice([None, 'confirmed', 'cancelled'])
                )
            elif action == 'update':
                service.update_booking(
                    rng.choice(booking_ids),
                    BookingUpdateData(status=rng.choice(BOOKING_STATUSES))
                )
            else:
                service.cancel_booking(rng.choice(booking_ids))

            instance.refresh_from_db()
            seat_holders = Booking.objects.for_instance(instance.id).counting()
            self.assertEqual(instance.current_bookings, seat_holders.count())
            self.assertLessEqual(instance.current_bookings, course.capacity)
            self.assertGreaterEqual(instance.current_bookings, 0)
            users = list(seat_holders.values_list('user_id', flat=True))
            self.assertEqual(len(users), len(set(users)))


class StaleInstanceStore(DocumentStore):
    """Serves the first read of each instance to every later reader."""

    def __init__(self):
        super().__init__()
        self._snapshots = {}

    def get_document(self, collection, doc_id):
        if collection != COLLECTION_INSTANCES:
            return super().get_document(collection, doc_id)
        if doc_id not in self._snapshots:
            self._snapshots[doc_id] = super().get_document(collection, doc_id)
        return self._snapshots[doc_id]


class LastSeatRaceTests(TestCase):
    """
    The capacity check reads the counter before the batch write without a
    lock, so two requests that both read before either writes can overbook.
    """

    def test_interleaved_creates_can_overbook_last_seat(self):
        course = make_course(capacity=1)
        instance = make_instance(course)
        store = StaleInstanceStore()
        store.get_document(COLLECTION_INSTANCES, instance.id)

        first = BookingService(store=store, clock=fixed_clock).create_booking('user-a', instance.id)
        second = BookingService(store=store, clock=fixed_clock).create_booking('user-b', instance.id)

        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 2)
        self.assertGreater(instance.current_bookings, course.capacity)

        # Recalculation agrees with the bookings; it does not undo the overbooking.
        result = BookingService(clock=fixed_clock).recalculate_instance_bookings(instance.id)
        self.assertEqual(result.value, 2)


class BookingDirectoryTests(TestCase):
    """Test BookingDirectory lookups and joins."""

    def setUp(self):
        self.directory = BookingDirectory()
        self.course = make_course()
        self.instance = make_instance(self.course)
        self.later = make_instance(self.course, starts_in=timedelta(days=7))

    def test_bookings_by_user_newest_first(self):
        first = make_booking(self.instance, 'user-a')
        second = make_booking(self.later, 'user-a')
        make_booking(self.instance, 'user-b')

        result = self.directory.get_bookings_by_user('user-a')

        self.assertEqual([b.id for b in result.value], [second.id, first.id])

    def test_bookings_by_instance(self):
        make_booking(self.instance, 'user-a')
        make_booking(self.instance, 'user-b')
        make_booking(self.later, 'user-a')

        result = self.directory.get_bookings_by_instance(self.instance.id)
        self.assertEqual(len(result.value), 2)
        self.assertEqual(len(self.directory.get_all_bookings().value), 3)

    def test_get_booking(self):
        booking = make_booking(self.instance)
        self.assertEqual(self.directory.get_booking(booking.id).value, booking)
        self.assertIsInstance(self.directory.get_booking(9999).error, BookingNotFound)
        self.assertIsInstance(self.directory.get_booking('abc').error, BookingNotFound)

    def test_blank_user_id_is_missing(self):
        """Whitespace-only user ids are rejected the same way the booking service rejects them."""
        make_booking(self.instance, 'user-a')

        for lookup in (self.directory.get_bookings_by_user,
                       self.directory.get_user_bookings_with_details):
            self.assertIsInstance(lookup('   ').error, MissingField)
            self.assertIsInstance(lookup('').error, MissingField)

        self.assertIsInstance(self.directory.get_bookings_by_instance(' ').error, MissingField)

    def test_booking_with_details(self):
        booking = make_booking(self.instance)

        details = self.directory.get_booking_with_details(booking.id).value

        self.assertEqual(details.booking, booking)
        self.assertEqual(details.instance, self.instance)
        self.assertEqual(details.course, self.course)

    def test_booking_with_details_missing_parts(self):
        orphan = make_booking(make_instance(course_id=9999))
        self.assertIsInstance(
            self.directory.get_booking_with_details(orphan.id).error, CourseNotFound
        )

        dangling = Booking.objects.create(instance_id=9999, user_id='user-a')
        self.assertIsInstance(
            self.directory.get_booking_with_details(dangling.id).error, InstanceNotFound
        )

    def test_user_bookings_with_details_batches_lookups(self):
        make_booking(self.instance, 'user-a')
        make_booking(self.later, 'user-a')
        Booking.objects.create(instance_id=9999, user_id='user-a')

        with self.assertNumQueries(3):
            result = self.directory.get_user_bookings_with_details('user-a')

        self.assertEqual(len(result.value), 2)
        self.assertEqual(result.value[0].instance, self.later)
        self.assertEqual(result.value[1].course, self.course)

    def test_user_without_bookings(self):
        self.assertEqual(self.directory.get_user_bookings_with_details('nobody').value, [])


class CourseCatalogTests(TestCase):
    """Test CourseCatalog listing and search."""

    def setUp(self):
        self.catalog = CourseCatalog()
        self.flow = make_course(course_name="Morning Flow", course_type="Vinyasa",
                                instructor="Maya", price_per_class=Decimal('15.00'), duration_minutes=60)
        self.yin = make_course(course_name="Yin Evening", course_type="Yin",
                               instructor="Tom", price_per_class=Decimal('12.00'), duration_minutes=75)
        self.power = make_course(course_name="Power Hour", course_type="Vinyasa",
                                 instructor="Maya", price_per_class=Decimal('20.00'), duration_minutes=60)
        make_course(course_name="Retired Class", valid=False)

    def test_all_courses_are_valid_only(self):
        names = [course.course_name for course in self.catalog.get_all_courses().value]
        self.assertEqual(names, ["Morning Flow", "Power Hour", "Yin Evening"])

    def test_text_query(self):
        page = self.catalog.search_courses(CourseSearchParams(query='tom')).value
        self.assertEqual(page.courses, [self.yin])

    def test_search_skips_retired_courses(self):
        page = self.catalog.search_courses(CourseSearchParams(query='retired')).value

        self.assertEqual(page.courses, [])
        self.assertEqual(page.total_count, 0)
        self.assertEqual(page.total_pages, 0)

    def test_filters_and_sort(self):
        page = self.catalog.search_courses(CourseSearchParams(
            course_type='Vinyasa',
            max_price=Decimal('25.00'),
            sort_by='price_per_class',
            sort_order='desc',
        )).value
        self.assertEqual(page.courses, [self.power, self.flow])

        longer = self.catalog.search_courses(CourseSearchParams(min_duration=70)).value
        self.assertEqual(longer.courses, [self.yin])

    def test_pagination(self):
        page = self.catalog.search_courses(CourseSearchParams(page=2, limit=2)).value

        self.assertEqual(page.courses, [self.yin])
        self.assertEqual(page.total_count, 3)
        self.assertEqual(page.total_pages, 2)
        self.assertFalse(page.has_next_page)
        self.assertTrue(page.has_previous_page)

    def test_types_and_instructors(self):
        self.assertEqual(self.catalog.get_course_types().value, ["Vinyasa", "Yin"])
        self.assertEqual(self.catalog.get_instructors().value, ["Maya", "Tom"])

    def test_instances_for_course(self):
        later = make_instance(self.flow, starts_in=timedelta(days=3))
        sooner = make_instance(self.flow, starts_in=timedelta(days=1))
        make_instance(self.flow, starts_in=timedelta(days=2), valid=False)
        make_instance(self.yin)

        result = self.catalog.get_instances_for_course(self.flow.id)
        self.assertEqual(result.value, [sooner, later])

    def test_course_not_found(self):
        self.assertIsInstance(self.catalog.get_course(9999).error, CourseNotFound)


class BookingAPITests(APITestCase):
    """Test booking API endpoints."""

    def setUp(self):
        self.client = APIClient()
        self.course = make_course(capacity=1)
        self.instance = make_instance(self.course, now=timezone.now())

    def test_create_booking(self):
        response = self.client.post('/api/bookings/', {
            'user_id': 'user-a',
            'instance_id': self.instance.id,
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['status'], 'pending')
        self.assertTrue(response.data['counts_toward_capacity'])

    def test_full_and_duplicate_are_conflicts(self):
        payload = {'user_id': 'user-a', 'instance_id': self.instance.id}
        self.client.post('/api/bookings/', payload, format='json')

        duplicate = self.client.post('/api/bookings/', payload, format='json')
        self.assertEqual(duplicate.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(duplicate.data['code'], 'INSTANCE_FULL')

        roomy = make_instance(make_course(capacity=5), now=timezone.now())
        self.client.post('/api/bookings/', {'user_id': 'user-a', 'instance_id': roomy.id}, format='json')
        again = self.client.post('/api/bookings/', {'user_id': 'user-a', 'instance_id': roomy.id}, format='json')
        self.assertEqual(again.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(again.data['code'], 'DUPLICATE_BOOKING')

    def test_create_validation(self):
        response = self.client.post('/api/bookings/', {'instance_id': self.instance.id}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post('/api/bookings/', {'user_id': 'user-a', 'instance_id': 9999}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'INSTANCE_NOT_FOUND')

    def test_list_bookings(self):
        make_booking(self.instance, 'user-a')

        response = self.client.get('/api/bookings/', {'user_id': 'user-a'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)

        response = self.client.get('/api/bookings/', {'instance_id': self.instance.id})
        self.assertEqual(len(response.data), 1)

        response = self.client.get('/api/bookings/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_booking_detail(self):
        booking = make_booking(self.instance)

        response = self.client.get(f'/api/bookings/{booking.id}/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['booking']['id'], booking.id)
        self.assertEqual(response.data['instance']['id'], self.instance.id)
        self.assertEqual(response.data['instance']['available_spots'], 1)
        self.assertFalse(response.data['instance']['is_booking_closed'])
        self.assertEqual(response.data['course']['course_name'], 'Morning Flow')

        missing = self.client.get('/api/bookings/9999/')
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

    def test_update_booking(self):
        booking = self.client.post('/api/bookings/', {
            'user_id': 'user-a', 'instance_id': self.instance.id, 'status': 'confirmed',
        }, format='json').data

        response = self.client.patch(f'/api/bookings/{booking["id"]}/', {'status': 'cancelled'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'cancelled')
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.current_bookings, 0)

        invalid = self.client.patch(f'/api/bookings/{booking["id"]}/', {'status': 'gone'}, format='json')
        self.assertEqual(invalid.status_code, status.HTTP_400_BAD_REQUEST)

    def test_cancel_booking(self):
        booking = make_booking(self.instance, status='confirmed')
        response = self.client.post(f'/api/bookings/{booking.id}/cancel/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'cancelled')

    def test_cancel_too_late(self):
        soon = make_instance(self.course, starts_in=timedelta(minutes=10), now=timezone.now())
        booking = make_booking(soon, status='confirmed')

        response = self.client.post(f'/api/bookings/{booking.id}/cancel/')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'CANCELLATION_TOO_LATE')

    def test_delete_booking(self):
        booking = make_booking(self.instance)
        response = self.client.delete(f'/api/bookings/{booking.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Booking.objects.filter(pk=booking.id).exists())

    def test_user_bookings_with_details(self):
        make_booking(self.instance, 'user-a')

        response = self.client.get('/api/users/user-a/bookings/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['course']['id'], self.course.id)

    def test_user_bookings_endpoint_batches_lookups(self):
        """Serializing the joined bookings adds no per-booking course queries."""
        roomy = make_course(course_name="Open Practice", capacity=8)
        for day in range(1, 6):
            instance = make_instance(roomy, starts_in=timedelta(days=day), now=timezone.now(),
                                     current_bookings=day)
            make_booking(instance, 'user-a')

        with self.assertNumQueries(3):
            response = self.client.get('/api/users/user-a/bookings/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 5)
        spots = sorted(item['instance']['available_spots'] for item in response.data)
        self.assertEqual(spots, [3, 4, 5, 6, 7])

    def test_recalculate_endpoints(self):
        ClassInstance.objects.filter(pk=self.instance.id).update(current_bookings=4)
        make_booking(self.instance, 'user-a', 'pending')

        response = self.client.post(f'/api/instances/{self.instance.id}/recalculate/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['current_bookings'], 1)

        response = self.client.post('/api/instances/recalculate/')
        self.assertEqual(response.data['instances_corrected'], 0)

        missing = self.client.post('/api/instances/9999/recalculate/')
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)

    def test_mark_attended(self):
        past = make_instance(self.course, starts_in=-timedelta(hours=3), now=timezone.now())
        booking = make_booking(past, status='confirmed')

        response = self.client.post('/api/bookings/mark-attended/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['marked_attended'], 1)
        booking.refresh_from_db()
        self.assertEqual(booking.status, 'attended')


class CourseAPITests(APITestCase):
    """Test course catalog API endpoints."""

    def setUp(self):
        self.client = APIClient()
        self.course = make_course(course_name="Morning Flow", price_per_class=Decimal('15.00'))
        make_course(course_name="Yin Evening", course_type="Yin", price_per_class=Decimal('12.00'))

    def test_search_courses(self):
        response = self.client.get('/api/courses/', {'sort_by': 'price_per_class', 'limit': 1})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_count'], 2)
        self.assertEqual(response.data['total_pages'], 2)
        self.assertEqual(response.data['courses'][0]['course_name'], "Yin Evening")

    def test_invalid_price_range(self):
        response = self.client.get('/api/courses/', {'min_price': '20', 'max_price': '10'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_course_detail_and_instances(self):
        make_instance(self.course, now=timezone.now())
        make_instance(self.course, starts_in=timedelta(days=2), now=timezone.now())

        response = self.client.get(f'/api/courses/{self.course.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['course_name'], "Morning Flow")

        with self.assertNumQueries(2):
            response = self.client.get(f'/api/courses/{self.course.id}/instances/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 2)
        self.assertEqual([item['available_spots'] for item in response.data], [10, 10])

        missing = self.client.get('/api/courses/9999/instances/')
        self.assertEqual(missing.status_code, status.HTTP_404_NOT_FOUND)


class ManagementCommandTests(TestCase):
    """Test management commands."""

    def test_recalculate_bookings_command(self):
        instance = make_instance(make_course(), current_bookings=3)
        make_booking(instance, 'user-a', 'confirmed')

        out = StringIO()
        call_command('recalculate_bookings', stdout=out)

        self.assertIn('Successfully corrected 1', out.getvalue())
        instance.refresh_from_db()
        self.assertEqual(instance.current_bookings, 1)

    def test_recalculate_single_instance_command(self):
        instance = make_instance(make_course(), current_bookings=2)

        out = StringIO()
        call_command('recalculate_bookings', f'--instance={instance.id}', stdout=out)

        self.assertIn(f'Instance {instance.id} now has 0 seat(s) taken', out.getvalue())

    def test_mark_past_bookings_attended_command(self):
        past = make_instance(make_course(), starts_in=-timedelta(days=1), now=timezone.now())
        make_booking(past, 'user-a', 'confirmed')

        out = StringIO()
        call_command('mark_past_bookings_attended', stdout=out)

        self.assertIn('Successfully marked 1 booking(s) as attended', out.getvalue())
