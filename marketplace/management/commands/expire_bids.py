"""Expire pending bids whose expiry time has passed. Run periodically (cron)."""

from django.core.management.base import BaseCommand

from marketplace.services.bids import expire_stale_bids


class Command(BaseCommand):
    help = "Mark pending bids past their expiry time as expired"

    def handle(self, *args, **options):
        count = expire_stale_bids()
        self.stdout.write(self.style.SUCCESS(f"Expired {count} bids."))
