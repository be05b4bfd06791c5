"""
Serializers for the class booking system.
"""

from rest_framework import serializers

from .models import Booking, ClassInstance, Course
from .scheduling import is_booking_closed, is_instance_past
from .types import BOOKING_STATUSES, COURSE_SORT_FIELDS


class CourseReadSerializer(serializers.ModelSerializer):
    """Serializer for reading/displaying Course (output)."""

    class Meta:
        model = Course
        fields = [
            'id',
            'course_name',
            'course_type',
            'description',
            'duration_minutes',
            'capacity',
            'price_per_class',
            'instructor',
            'studio_room',
            'image_url',
            'valid',
            'created_at',
            'updated_at',
        ]


class ClassInstanceReadSerializer(serializers.ModelSerializer):
    """
    Serializer for reading/displaying ClassInstance (output).

    Adds the time-policy flags booking screens use to enable or disable
    their actions, and the seats still free. Views pass the already fetched
    courses as ``context['courses']`` (keyed by id); without the course
    ``available_spots`` is null.
    """

    course_id = serializers.IntegerField()
    is_past = serializers.SerializerMethodField()
    is_booking_closed = serializers.SerializerMethodField()
    available_spots = serializers.SerializerMethodField()

    class Meta:
        model = ClassInstance
        fields = [
            'id',
            'course_id',
            'instructor',
            'date',
            'time',
            'current_bookings',
            'available_spots',
            'status',
            'active',
            'valid',
            'notes',
            'is_past',
            'is_booking_closed',
            'created_at',
            'updated_at',
        ]

    def get_is_past(self, obj):
        return is_instance_past(obj.date, obj.time)

    def get_is_booking_closed(self, obj):
        return is_booking_closed(obj.date, obj.time)

    def get_available_spots(self, obj):
        course = self.context.get('courses', {}).get(obj.course_id)
        if course is None:
            return None
        return max(course.capacity - obj.current_bookings, 0)


class BookingReadSerializer(serializers.ModelSerializer):
    """Serializer for reading/displaying Booking (output)."""

    instance_id = serializers.IntegerField()
    counts_toward_capacity = serializers.BooleanField()

    class Meta:
        model = Booking
        fields = [
            'id',
            'instance_id',
            'user_id',
            'status',
            'counts_toward_capacity',
            'created_at',
            'updated_at',
        ]


class BookingDetailsSerializer(serializers.Serializer):
    """Serializer for a booking joined with its instance and course."""

    booking = BookingReadSerializer()
    instance = ClassInstanceReadSerializer()
    course = CourseReadSerializer()


class BookingCreateSerializer(serializers.Serializer):
    """Serializer for creating a booking."""

    user_id = serializers.CharField(max_length=128)
    instance_id = serializers.IntegerField(min_value=1)
    status = serializers.ChoiceField(choices=BOOKING_STATUSES, required=False)


class BookingUpdateSerializer(serializers.Serializer):
    """Serializer for updating a booking."""

    status = serializers.ChoiceField(choices=BOOKING_STATUSES, required=False)


class BookingQuerySerializer(serializers.Serializer):
    """Serializer for booking list query parameters."""

    user_id = serializers.CharField(required=False)
    instance_id = serializers.IntegerField(required=False, min_value=1)

    def validate(self, data):
        """Require exactly one lookup key."""
        if bool(data.get('user_id')) == (data.get('instance_id') is not None):
            raise serializers.ValidationError(
                "Provide either user_id or instance_id."
            )
        return data


class CourseSearchQuerySerializer(serializers.Serializer):
    """Serializer for course search query parameters."""

    query = serializers.CharField(required=False, allow_blank=True)
    course_type = serializers.CharField(required=False)
    instructor = serializers.CharField(required=False)
    min_price = serializers.DecimalField(max_digits=8, decimal_places=2, required=False)
    max_price = serializers.DecimalField(max_digits=8, decimal_places=2, required=False)
    min_duration = serializers.IntegerField(min_value=0, required=False)
    max_duration = serializers.IntegerField(min_value=0, required=False)
    sort_by = serializers.ChoiceField(choices=COURSE_SORT_FIELDS, required=False)
    sort_order = serializers.ChoiceField(choices=['asc', 'desc'], default='asc')
    page = serializers.IntegerField(min_value=1, default=1)
    limit = serializers.IntegerField(min_value=1, max_value=100, default=10)

    def validate(self, data):
        """Ensure ranges are not inverted."""
        for low, high in (('min_price', 'max_price'), ('min_duration', 'max_duration')):
            if data.get(low) is not None and data.get(high) is not None and data[low] > data[high]:
                raise serializers.ValidationError({
                    high: f'{high} must not be below {low}.'
                })
        return data
