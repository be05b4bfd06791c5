"""
Management command to mark confirmed bookings on past classes as attended.

This command should be run periodically (e.g., hourly via cron).
"""

from django.core.management.base import BaseCommand, CommandError
from bookings.services import BookingService


class Command(BaseCommand):
    help = 'Mark confirmed bookings on classes that have started as attended'

    def handle(self, *args, **options):
        result = BookingService().mark_past_bookings_as_attended()

        if not result.ok:
            raise CommandError(f'{result.error.code}: {result.error.message}')

        self.stdout.write(
            self.style.SUCCESS(
                f'Successfully marked {result.value} booking(s) as attended'
            )
        )
