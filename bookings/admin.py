"""
Admin configuration for the bookings app.

Seat counters are read-only here; use the recalculate_bookings command to
repair them.
"""

from django.contrib import admin
from .models import Booking, ClassInstance, Course


@admin.register(Course)
class CourseAdmin(admin.ModelAdmin):
    """Admin interface for Course model."""

    list_display = ['course_name', 'course_type', 'instructor', 'capacity', 'price_per_class', 'valid']
    list_filter = ['valid', 'course_type', 'instructor']
    search_fields = ['course_name', 'description', 'instructor']

    fieldsets = (
        ('Basic Information', {
            'fields': ('course_name', 'course_type', 'description', 'image_url', 'valid')
        }),
        ('Class Format', {
            'fields': ('duration_minutes', 'capacity', 'price_per_class', 'instructor', 'studio_room')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['created_at', 'updated_at']


@admin.register(ClassInstance)
class ClassInstanceAdmin(admin.ModelAdmin):
    """Admin interface for ClassInstance model."""

    list_display = ['course', 'date', 'time', 'instructor', 'current_bookings', 'status', 'active', 'valid']
    list_filter = ['status', 'active', 'valid', 'course']
    search_fields = ['instructor', 'notes']
    date_hierarchy = 'date'

    fieldsets = (
        ('Schedule', {
            'fields': ('course', 'instructor', 'date', 'time', 'notes')
        }),
        ('Status', {
            'fields': ('status', 'active', 'valid', 'current_bookings')
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ['current_bookings', 'created_at', 'updated_at']


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    """Admin interface for Booking model."""

    list_display = ['id', 'user_id', 'instance', 'status', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['user_id']
    date_hierarchy = 'created_at'

    readonly_fields = ['created_at', 'updated_at']
