"""
Custom managers and querysets for booking models.

QuerySets define chainable query methods.
Managers use QuerySets to enable method chaining.
No business logic should be here - only query operations.
"""

from django.db import models

from .types import COUNTING_STATUSES


class BookingQuerySet(models.QuerySet):
    """Custom queryset for Booking model with chainable methods."""

    def counting(self):
        """Get bookings that occupy a seat (pending or confirmed)."""
        return self.filter(status__in=COUNTING_STATUSES)

    def for_user(self, user_id):
        """
        Get bookings made by a user, newest first.

        Args:
            user_id: opaque identifier from the authentication provider
        """
        return self.filter(user_id=user_id).order_by('-created_at', '-id')

    def for_instance(self, instance_id):
        """
        Get bookings on a class instance.

        Args:
            instance_id: primary key of the ClassInstance
        """
        return self.filter(instance_id=instance_id)

    def active_for(self, user_id, instance_id):
        """Get a user's seat-occupying bookings on one instance."""
        return self.counting().filter(user_id=user_id, instance_id=instance_id)


class BookingManager(models.Manager):
    """Custom manager for Booking model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return BookingQuerySet(self.model, using=self._db)

    def counting(self):
        """Get bookings that occupy a seat (pending or confirmed)."""
        return self.get_queryset().counting()

    def for_user(self, user_id):
        """Get bookings made by a user, newest first."""
        return self.get_queryset().for_user(user_id)

    def for_instance(self, instance_id):
        """Get bookings on a class instance."""
        return self.get_queryset().for_instance(instance_id)

    def active_for(self, user_id, instance_id):
        """Get a user's seat-occupying bookings on one instance."""
        return self.get_queryset().active_for(user_id, instance_id)
