"""
Models for the class booking system.

Three collections back the system:
- Course stores a class offering and its seat capacity
- ClassInstance stores one dated occurrence of a Course, with a denormalized
  count of the bookings currently holding a seat
- Booking stores one user's claim on one ClassInstance

References between them carry no database constraint: a booking can outlive
its instance, and readers must handle the missing side.
"""

from django.db import models
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator

from .managers import BookingManager
from .scheduling import get_instance_datetime
from .types import BOOKING_STATUSES, INSTANCE_STATUSES, counts_toward_capacity


class Course(models.Model):
    """
    A class offering in the studio catalog.

    ``capacity`` is the ceiling for the seat counter of every instance.
    """

    course_name = models.CharField(max_length=200)
    course_type = models.CharField(max_length=100, blank=True, default='')
    description = models.TextField(blank=True, default='')
    duration_minutes = models.PositiveIntegerField(default=60)
    capacity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price_per_class = models.DecimalField(max_digits=8, decimal_places=2, default=0)
    instructor = models.CharField(max_length=200, blank=True, default='')
    studio_room = models.CharField(max_length=100, blank=True, default='')
    image_url = models.URLField(blank=True, default='')

    valid = models.BooleanField(
        default=True,
        help_text="Whether this course is offered in the catalog"
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['course_name']
        indexes = [
            models.Index(fields=['valid', 'course_type']),
        ]

    def __str__(self):
        return f"{self.course_name} ({self.capacity} seats)"

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class ClassInstance(models.Model):
    """
    One scheduled occurrence of a Course.

    ``current_bookings`` is written only by the booking service and should
    equal the number of seat-holding bookings on this instance.
    """

    STATUS_CHOICES = [(value, value.replace('-', ' ').title()) for value in INSTANCE_STATUSES]

    course = models.ForeignKey(
        Course,
        on_delete=models.DO_NOTHING,
        db_constraint=False,
        related_name='instances',
    )
    instructor = models.CharField(max_length=200, blank=True, default='')
    date = models.DateField()
    time = models.TimeField(help_text="Local start time of the class")
    current_bookings = models.PositiveIntegerField(default=0)

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='scheduled'
    )
    active = models.BooleanField(default=True)
    valid = models.BooleanField(default=True)
    notes = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['date', 'time']
        indexes = [
            models.Index(fields=['course', 'date']),
            models.Index(fields=['date', 'time']),
        ]

    def __str__(self):
        return f"{self.course_id} - {self.date} {self.time.strftime('%H:%M')}"

    @property
    def start_datetime(self):
        """Timezone-aware start of the class."""
        return get_instance_datetime(self.date, self.time)

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean(exclude=['course'])
        super().save(*args, **kwargs)


class Booking(models.Model):
    """
    One user's claim on one class instance.

    Pending and confirmed bookings hold a seat; every other status does not.
    """

    STATUS_CHOICES = [(value, value.replace('-', ' ').title()) for value in BOOKING_STATUSES]

    instance = models.ForeignKey(
        ClassInstance,
        on_delete=models.DO_NOTHING,
        db_constraint=False,
        related_name='bookings',
    )
    user_id = models.CharField(max_length=128, db_index=True)

    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='pending'
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = BookingManager()

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['user_id', 'instance', 'status']),
            models.Index(fields=['instance', 'status']),
        ]

    def __str__(self):
        return f"Booking {self.pk} - {self.user_id} on instance {self.instance_id} [{self.status}]"

    @property
    def counts_toward_capacity(self):
        """Whether this booking currently occupies a seat."""
        return counts_toward_capacity(self.status)

    def clean(self):
        """Validate booking data."""
        super().clean()

        if not self.user_id or not self.user_id.strip():
            raise ValidationError({
                'user_id': 'A booking must belong to a user.'
            })

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean(exclude=['instance'])
        super().save(*args, **kwargs)
