"""
Management command to repair class instance seat counters.

Realigns ``current_bookings`` with the pending and confirmed bookings of
one instance, or of every instance when no id is given.
"""

from django.core.management.base import BaseCommand, CommandError
from bookings.services import BookingService


class Command(BaseCommand):
    help = 'Recalculate seat counters of class instances from their bookings'

    def add_arguments(self, parser):
        parser.add_argument(
            '--instance',
            type=int,
            default=None,
            help='Only recalculate this class instance (default: all instances)'
        )

    def handle(self, *args, **options):
        service = BookingService()
        instance_id = options['instance']

        if instance_id is None:
            result = service.recalculate_all_instance_bookings()
            message = 'Successfully corrected {} instance counter(s)'
        else:
            result = service.recalculate_instance_bookings(instance_id)
            message = f'Instance {instance_id} now has {{}} seat(s) taken'

        if not result.ok:
            raise CommandError(f'{result.error.code}: {result.error.message}')

        self.stdout.write(self.style.SUCCESS(message.format(result.value)))
