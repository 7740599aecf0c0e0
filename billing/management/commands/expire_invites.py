"""Expire pending team invites past their expiry time, returning their seats."""

from django.core.management.base import BaseCommand

from billing.services.seats import expire_invites


class Command(BaseCommand):
    help = "Mark pending team invites past their expiry time as expired"

    def handle(self, *args, **options):
        count = expire_invites()
        self.stdout.write(self.style.SUCCESS(f"Expired {count} invites."))
