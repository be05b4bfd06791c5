"""
Read-only lookups over bookings and the course catalog.

Detail views join bookings with their instance and course. The per-user
join fetches every referenced instance and course with one "in" query each
and assembles the result from in-memory maps, so its cost does not grow
with the number of bookings.
"""

import math
from typing import Any, Optional

from .errors import BookingNotFound, CourseNotFound, InstanceNotFound, MissingField
from .services import is_blank, service_result
from .store import DocumentStore
from .types import (
    COLLECTION_BOOKINGS,
    COLLECTION_COURSES,
    COLLECTION_INSTANCES,
    COURSE_SORT_FIELDS,
    DEFAULT_PAGE_SIZE,
    BookingDetails,
    CourseSearchParams,
    CourseSearchResults,
)

NEWEST_FIRST = [('created_at', 'desc'), ('id', 'desc')]


class BookingDirectory:
    """Booking lookups by id, user and instance, with optional detail joins."""

    def __init__(self, store: Optional[DocumentStore] = None):
        self.store = store or DocumentStore()

    @service_result
    def get_booking(self, booking_id: Any):
        """Get a single booking."""
        return self._get_booking(booking_id)

    @service_result
    def get_bookings_by_user(self, user_id: str):
        """Get a user's bookings, newest first."""
        if is_blank(user_id):
            raise MissingField('user_id')
        return self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('user_id', '==', user_id)],
            order_by=NEWEST_FIRST
        )

    @service_result
    def get_bookings_by_instance(self, instance_id: Any):
        """Get every booking on a class instance."""
        if is_blank(instance_id):
            raise MissingField('instance_id')
        return self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('instance_id', '==', instance_id)],
            order_by=NEWEST_FIRST
        )

    @service_result
    def get_all_bookings(self):
        """Get every booking, newest first."""
        return self.store.query_documents(COLLECTION_BOOKINGS, order_by=NEWEST_FIRST)

    @service_result
    def get_booking_with_details(self, booking_id: Any):
        """
        Get a booking joined with its class instance and course.

        Errors:
            BookingNotFound, InstanceNotFound, CourseNotFound, StoreError
        """
        booking = self._get_booking(booking_id)

        instance = self.store.get_document(COLLECTION_INSTANCES, booking.instance_id)
        if instance is None:
            raise InstanceNotFound()

        course = self.store.get_document(COLLECTION_COURSES, instance.course_id)
        if course is None:
            raise CourseNotFound()

        return BookingDetails(booking=booking, instance=instance, course=course)

    @service_result
    def get_user_bookings_with_details(self, user_id: str):
        """
        Get a user's bookings joined with instances and courses, newest first.

        Bookings whose instance or course no longer exists are left out.
        """
        if is_blank(user_id):
            raise MissingField('user_id')

        bookings = self.store.query_documents(
            COLLECTION_BOOKINGS,
            where=[('user_id', '==', user_id)],
            order_by=NEWEST_FIRST
        )
        if not bookings:
            return []

        instance_ids = sorted({booking.instance_id for booking in bookings})
        instances = self.store.query_documents(
            COLLECTION_INSTANCES,
            where=[('id', 'in', instance_ids)]
        )

        course_ids = sorted({instance.course_id for instance in instances})
        courses = self.store.query_documents(
            COLLECTION_COURSES,
            where=[('id', 'in', course_ids)]
        ) if course_ids else []

        instances_by_id = {instance.pk: instance for instance in instances}
        courses_by_id = {course.pk: course for course in courses}

        details = []
        for booking in bookings:
            instance = instances_by_id.get(booking.instance_id)
            course = courses_by_id.get(instance.course_id) if instance else None
            if instance and course:
                details.append(BookingDetails(booking=booking, instance=instance, course=course))
        return details

    def _get_booking(self, booking_id):
        booking = self.store.get_document(COLLECTION_BOOKINGS, booking_id)
        if booking is None:
            raise BookingNotFound()
        return booking


class CourseCatalog:
    """Course listing, search and the schedule of each course."""

    def __init__(self, store: Optional[DocumentStore] = None):
        self.store = store or DocumentStore()

    @service_result
    def get_all_courses(self):
        """Get every course offered in the catalog."""
        return self._valid_courses()

    @service_result
    def get_course(self, course_id: Any):
        """Get a single course."""
        course = self.store.get_document(COLLECTION_COURSES, course_id)
        if course is None:
            raise CourseNotFound()
        return course

    @service_result
    def search_courses(self, params: CourseSearchParams):
        """
        Search offered courses by text, filter, sort and paginate them.

        The text query matches name, description, instructor and type,
        case-insensitively.
        """
        courses = self._valid_courses()

        if params.query:
            needle = params.query.lower()
            courses = [course for course in courses if _matches_query(course, needle)]

        courses = [course for course in courses if _passes_filters(course, params)]
        courses = _sort_courses(courses, params.sort_by, params.sort_order)

        page = max(params.page or 1, 1)
        limit = params.limit if params.limit and params.limit > 0 else DEFAULT_PAGE_SIZE
        start = (page - 1) * limit
        end = start + limit

        return CourseSearchResults(
            courses=courses[start:end],
            total_count=len(courses),
            page=page,
            total_pages=math.ceil(len(courses) / limit),
            has_next_page=end < len(courses),
            has_previous_page=page > 1,
        )

    @service_result
    def get_course_types(self):
        """Get the distinct course types on offer."""
        return _distinct(course.course_type for course in self._valid_courses())

    @service_result
    def get_instructors(self):
        """Get the distinct course instructors."""
        return _distinct(course.instructor for course in self._valid_courses())

    @service_result
    def get_instances_for_course(self, course_id: Any):
        """Get the valid instances of a course in schedule order."""
        return self.store.query_documents(
            COLLECTION_INSTANCES,
            where=[('course_id', '==', course_id), ('valid', '==', True)],
            order_by=[('date', 'asc'), ('time', 'asc')]
        )

    def _valid_courses(self):
        return self.store.query_documents(
            COLLECTION_COURSES,
            where=[('valid', '==', True)],
            order_by=[('course_name', 'asc')]
        )


def _matches_query(course, needle):
    haystacks = (course.course_name, course.description, course.instructor, course.course_type)
    return any(needle in (text or '').lower() for text in haystacks)


def _passes_filters(course, params):
    """Check a course against every filter set on ``params``."""
    if params.course_type and course.course_type != params.course_type:
        return False
    if params.instructor and course.instructor != params.instructor:
        return False
    if params.min_price is not None and course.price_per_class < params.min_price:
        return False
    if params.max_price is not None and course.price_per_class > params.max_price:
        return False
    if params.min_duration is not None and course.duration_minutes < params.min_duration:
        return False
    if params.max_duration is not None and course.duration_minutes > params.max_duration:
        return False
    return True


def _sort_courses(courses, sort_by, sort_order):
    if sort_by not in COURSE_SORT_FIELDS or sort_by == 'course_name':
        key = lambda course: (course.course_name or '').lower()
    else:
        key = lambda course: getattr(course, sort_by) or 0
    return sorted(courses, key=key, reverse=(sort_order == 'desc'))


def _distinct(values):
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen
