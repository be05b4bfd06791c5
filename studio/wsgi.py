"""
WSGI entry point for the studio booking API.

Serve ``studio.wsgi:application`` with any WSGI server; deployment values
(secret key, allowed hosts, database path, booking thresholds) come from
the environment, see ``studio.settings``.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'studio.settings')

application = get_wsgi_application()
