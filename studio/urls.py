"""
Root URL configuration for the studio booking project.

/api/bookings/, /api/users/, /api/instances/ and /api/courses/ are served by
the bookings app; /admin/ manages courses, class instances and bookings.
"""
from django.contrib import admin
from django.urls import path, include

admin.site.site_header = 'Studio bookings'

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('bookings.urls')),
]
