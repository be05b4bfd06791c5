"""
URL routing for the bookings API.
"""

from django.urls import path
from .views import (
    BookingListCreateView,
    BookingDetailView,
    BookingCancelView,
    MarkAttendedView,
    UserBookingsView,
    InstanceRecalculateView,
    RecalculateAllView,
    CourseListView,
    CourseDetailView,
    CourseInstancesView,
)

urlpatterns = [
    path('bookings/', BookingListCreateView.as_view(), name='booking-list-create'),
    path('bookings/mark-attended/', MarkAttendedView.as_view(), name='booking-mark-attended'),
    path('bookings/<int:pk>/', BookingDetailView.as_view(), name='booking-detail'),
    path('bookings/<int:pk>/cancel/', BookingCancelView.as_view(), name='booking-cancel'),
    path('users/<str:user_id>/bookings/', UserBookingsView.as_view(), name='user-bookings'),
    path('instances/recalculate/', RecalculateAllView.as_view(), name='instance-recalculate-all'),
    path('instances/<int:pk>/recalculate/', InstanceRecalculateView.as_view(), name='instance-recalculate'),
    path('courses/', CourseListView.as_view(), name='course-list'),
    path('courses/<int:pk>/', CourseDetailView.as_view(), name='course-detail'),
    path('courses/<int:pk>/instances/', CourseInstancesView.as_view(), name='course-instances'),
]
