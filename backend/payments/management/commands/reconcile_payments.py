from django.core.management.base import BaseCommand, CommandError

from services.lifecycle.exceptions import StoreWriteError
from services.payments.exceptions import PaymentGatewayError
from services.payments.reconciler import reconcile_reference


class Command(BaseCommand):
    help = "Check payment references against Stripe and record any the webhook missed."

    def add_arguments(self, parser):
        parser.add_argument(
            "--reference",
            action="append",
            required=True,
            help="Stripe payment intent id (repeatable).",
        )

    def handle(self, *args, **options):
        failures = 0
        for reference in options["reference"]:
            try:
                paid = reconcile_reference(reference)
            except (PaymentGatewayError, StoreWriteError) as exc:
                failures += 1
                self.stderr.write(self.style.ERROR(f"{reference}: {exc}"))
                continue

            if paid:
                self.stdout.write(self.style.SUCCESS(f"{reference}: paid"))
            else:
                self.stdout.write(self.style.WARNING(f"{reference}: not paid"))

        if failures:
            raise CommandError(f"{failures} reference(s) could not be checked")
