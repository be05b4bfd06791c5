"""Views for the class booking system."""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .directory import BookingDirectory, CourseCatalog
from .serializers import (
    BookingCreateSerializer,
    BookingDetailsSerializer,
    BookingQuerySerializer,
    BookingReadSerializer,
    BookingUpdateSerializer,
    ClassInstanceReadSerializer,
    CourseReadSerializer,
    CourseSearchQuerySerializer,
)
from .services import BookingService
from .types import BookingUpdateData, CourseSearchParams


def error_response(error):
    """Translate a BookingError into an API response."""
    return Response(error.as_dict(), status=error.http_status)


def course_context(courses):
    """Serializer context carrying courses already fetched by the view."""
    return {'courses': {course.pk: course for course in courses}}


class BookingAPIView(APIView):
    """Base view wiring the booking service and directory per request."""

    service_class = BookingService
    directory_class = BookingDirectory

    def get_service(self):
        return self.service_class()

    def get_directory(self):
        return self.directory_class()


class BookingListCreateView(BookingAPIView):
    """
    List bookings of a user or instance, or book a seat.

    GET /api/bookings/?user_id=X - List a user's bookings, newest first
    GET /api/bookings/?instance_id=X - List bookings on an instance
    POST /api/bookings/ - Create a booking
    """

    def get(self, request):
        """List bookings by user or by instance."""
        query_serializer = BookingQuerySerializer(data=request.query_params)
        query_serializer.is_valid(raise_exception=True)

        user_id = query_serializer.validated_data.get('user_id')
        directory = self.get_directory()
        if user_id:
            result = directory.get_bookings_by_user(user_id)
        else:
            result = directory.get_bookings_by_instance(
                query_serializer.validated_data['instance_id']
            )

        if not result.ok:
            return error_response(result.error)
        return Response(BookingReadSerializer(result.value, many=True).data)

    def post(self, request):
        """Create a booking for a user on a class instance."""
        serializer = BookingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = serializer.validated_data
        result = self.get_service().create_booking(
            user_id=data['user_id'],
            instance_id=data['instance_id'],
            status=data.get('status')
        )

        if not result.ok:
            return error_response(result.error)
        return Response(BookingReadSerializer(result.value).data, status=status.HTTP_201_CREATED)


class BookingDetailView(BookingAPIView):
    """
    Retrieve, update, or delete a booking.

    GET /api/bookings/{id}/ - Retrieve booking with instance and course
    PATCH /api/bookings/{id}/ - Update booking status
    DELETE /api/bookings/{id}/ - Delete booking (administrative)
    """

    def get(self, request, pk):
        """Retrieve a booking with its instance and course."""
        result = self.get_directory().get_booking_with_details(pk)
        if not result.ok:
            return error_response(result.error)
        details = result.value
        serializer = BookingDetailsSerializer(details, context=course_context([details.course]))
        return Response(serializer.data)

    def patch(self, request, pk):
        """Update a booking's status."""
        serializer = BookingUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        update_data = BookingUpdateData(status=serializer.validated_data.get('status'))
        result = self.get_service().update_booking(pk, update_data)

        if not result.ok:
            return error_response(result.error)
        return Response(BookingReadSerializer(result.value).data)

    def delete(self, request, pk):
        """Delete a booking without touching seat counters."""
        result = self.get_service().delete_booking(pk)
        if not result.ok:
            return error_response(result.error)
        return Response({
            'message': f'Booking {pk} has been deleted.'
        }, status=status.HTTP_200_OK)


class BookingCancelView(BookingAPIView):
    """
    Cancel a booking.

    POST /api/bookings/{id}/cancel/
    """

    def post(self, request, pk):
        """Cancel a booking and release its seat."""
        result = self.get_service().cancel_booking(pk)
        if not result.ok:
            return error_response(result.error)
        return Response(BookingReadSerializer(result.value).data)


class UserBookingsView(BookingAPIView):
    """
    List a user's bookings with instance and course details.

    GET /api/users/{user_id}/bookings/
    """

    def get(self, request, user_id):
        """List a user's bookings with details."""
        result = self.get_directory().get_user_bookings_with_details(user_id)
        if not result.ok:
            return error_response(result.error)
        serializer = BookingDetailsSerializer(
            result.value,
            many=True,
            context=course_context(details.course for details in result.value)
        )
        return Response(serializer.data)


class MarkAttendedView(BookingAPIView):
    """
    Mark confirmed bookings on past instances as attended.

    POST /api/bookings/mark-attended/
    """

    def post(self, request):
        """Run the attendance job."""
        result = self.get_service().mark_past_bookings_as_attended()
        if not result.ok:
            return error_response(result.error)
        return Response({'marked_attended': result.value})


class InstanceRecalculateView(BookingAPIView):
    """
    Repair one instance's seat counter.

    POST /api/instances/{id}/recalculate/
    """

    def post(self, request, pk):
        """Recalculate an instance's seat counter."""
        result = self.get_service().recalculate_instance_bookings(pk)
        if not result.ok:
            return error_response(result.error)
        return Response({'instance_id': pk, 'current_bookings': result.value})


class RecalculateAllView(BookingAPIView):
    """
    Repair the seat counter of every instance.

    POST /api/instances/recalculate/
    """

    def post(self, request):
        """Recalculate all seat counters."""
        result = self.get_service().recalculate_all_instance_bookings()
        if not result.ok:
            return error_response(result.error)
        return Response({'instances_corrected': result.value})


class CourseListView(APIView):
    """
    Search the course catalog.

    GET /api/courses/?query=X&course_type=Y&sort_by=Z&page=N
    """

    def get(self, request):
        """Search courses with filters, sorting and pagination."""
        query_serializer = CourseSearchQuerySerializer(data=request.query_params)
        query_serializer.is_valid(raise_exception=True)

        result = CourseCatalog().search_courses(
            CourseSearchParams(**query_serializer.validated_data)
        )
        if not result.ok:
            return error_response(result.error)

        page = result.value
        return Response({
            'courses': CourseReadSerializer(page.courses, many=True).data,
            'total_count': page.total_count,
            'page': page.page,
            'total_pages': page.total_pages,
            'has_next_page': page.has_next_page,
            'has_previous_page': page.has_previous_page,
        })


class CourseDetailView(APIView):
    """
    Retrieve a course.

    GET /api/courses/{id}/
    """

    def get(self, request, pk):
        """Retrieve a course."""
        result = CourseCatalog().get_course(pk)
        if not result.ok:
            return error_response(result.error)
        return Response(CourseReadSerializer(result.value).data)


class CourseInstancesView(APIView):
    """
    List the scheduled instances of a course.

    GET /api/courses/{id}/instances/
    """

    def get(self, request, pk):
        """List a course's valid instances in schedule order."""
        catalog = CourseCatalog()
        course_result = catalog.get_course(pk)
        if not course_result.ok:
            return error_response(course_result.error)

        result = catalog.get_instances_for_course(pk)
        if not result.ok:
            return error_response(result.error)
        serializer = ClassInstanceReadSerializer(
            result.value,
            many=True,
            context=course_context([course_result.value])
        )
        return Response(serializer.data)
