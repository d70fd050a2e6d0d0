from django.core.management.base import BaseCommand

from bookings.models import Booking
from services.lifecycle.status_resolver import resolve_stage, terminal_conflicts
import logging

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Report bookings whose cached stage is stale or whose terminal flags contradict each other."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Refresh stale cached stages (raw columns are never changed).",
        )

    def handle(self, *args, **options):
        fix = options["fix"]
        stale = 0
        conflicting = 0

        for booking in Booking.objects.order_by("id").iterator():
            stage = resolve_stage(booking)

            conflicts = terminal_conflicts(booking)
            if conflicts:
                conflicting += 1
                self.stdout.write(
                    self.style.WARNING(
                        f"{booking.booking_code}: contradictory terminal flags {', '.join(conflicts)} -> {stage.value}"
                    )
                )

            if booking.canonical_stage != stage:
                stale += 1
                self.stdout.write(f"{booking.booking_code}: cached {booking.canonical_stage}, resolves to {stage.value}")
                if fix:
                    Booking.objects.filter(pk=booking.pk).update(canonical_stage=stage)

        if fix and stale:
            logger.info("Refreshed cached stage on %s booking(s)", stale)

        self.stdout.write(
            self.style.SUCCESS(
                f"{stale} stale cached stage(s){' refreshed' if fix else ''}; {conflicting} booking(s) with contradictory flags."
            )
        )
