"""Seed demo data: shippers, carriers, posted loads with bids and one subscription team."""

import random
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction
from factory import random as factory_random
from faker import Faker

from accounts.context import Actor
from billing.services import seats
from marketplace import factories
from marketplace.services import bids

RATE_FACTORS = [Decimal("0.90"), Decimal("0.95"), Decimal("1.00"), Decimal("1.05")]


class Command(BaseCommand):
    help = "Seed demo shippers, carriers, posted loads with bids and a carrier team"

    def add_arguments(self, parser):
        parser.add_argument("--shippers", type=int, default=3)
        parser.add_argument("--carriers", type=int, default=5)
        parser.add_argument("--loads-per-shipper", type=int, default=4)
        parser.add_argument("--max-bids-per-load", type=int, default=3)
        parser.add_argument(
            "--seed", type=int, default=None, help="Seed for Faker/random"
        )

    @transaction.atomic
    def handle(self, *args, **options):
        seed = options.get("seed")
        if seed is not None:
            random.seed(seed)
            factory_random.reseed_random(seed)
            Faker.seed(seed)
            self.stdout.write(self.style.NOTICE(f"Seeding randomness with seed={seed}"))

        admin = self._get_or_create_user("admin", role="admin")
        self.stdout.write(self.style.SUCCESS(f"Using admin: {admin.username}"))

        self.stdout.write("Creating shippers and carriers...")
        shippers = factories.ShipperFactory.create_batch(options["shippers"])
        carriers = factories.CarrierFactory.create_batch(options["carriers"])

        self.stdout.write("Posting loads and collecting bids...")
        loads_created = 0
        bids_created = 0
        for shipper in shippers:
            for load in factories.PostedLoadFactory.create_batch(
                options["loads_per_shipper"], shipper=shipper
            ):
                loads_created += 1
                bidders = random.sample(
                    carriers, k=min(len(carriers), random.randint(0, options["max_bids_per_load"]))
                )
                for carrier in bidders:
                    amount = load.posted_rate * random.choice(RATE_FACTORS)
                    bids.submit_bid(Actor.for_user(carrier), load.pk, amount)
                    bids_created += 1

        if carriers:
            owner = carriers[0]
            subscription = seats.start_subscription(
                owner, plan_type="carrier", seats=5, status="active"
            )
            invite = seats.create_invite(
                Actor.for_user(owner), subscription.pk, 2, email="dispatch@example.com"
            )
            self.stdout.write(
                f"Carrier team for {owner.username}: invite token {invite.invite_token}"
            )

        self.stdout.write(self.style.SUCCESS("Seed complete."))
        self.stdout.write(
            self.style.SUCCESS(
                f"Shippers: {len(shippers)}, Carriers: {len(carriers)}, "
                f"Loads: {loads_created}, Bids: {bids_created}"
            )
        )

    def _get_or_create_user(self, username: str, role: str):
        User = get_user_model()
        user, created = User.objects.get_or_create(
            username=username,
            defaults={
                "email": f"{username}@example.com",
                "role": role,
                "is_staff": True,
                "is_superuser": role == "admin",
            },
        )
        if created:
            user.set_password("password123")
            user.save()
        return user
