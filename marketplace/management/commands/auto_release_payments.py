"""Release escrow for loads delivered long enough ago without shipper action."""

from django.conf import settings
from django.core.management.base import BaseCommand

from marketplace.services.escrow import auto_release_payments


class Command(BaseCommand):
    help = (
        "Release held payments for loads delivered more than "
        "PAYMENT_AUTO_RELEASE_DAYS ago and complete those loads"
    )

    def handle(self, *args, **options):
        summary = auto_release_payments()
        style = self.style.SUCCESS if not summary["failed"] else self.style.WARNING
        self.stdout.write(
            style(
                f"Auto-release after {settings.PAYMENT_AUTO_RELEASE_DAYS} days: "
                f"{summary['released']} released, {summary['skipped']} skipped, "
                f"{summary['failed']} failed."
            )
        )
