"""Factories for generating demo/test data with factory_boy and Faker.

Use sequences for unique identifiers and Faker for descriptive fields.
``LoadFactory`` builds a draft load with every field needed to post it; the
lifecycle factories (``BookedLoadFactory``, ``PaymentFactory``) set status
directly and are meant for fixtures, not for exercising the transitions.
"""

import random
from datetime import timedelta
from decimal import Decimal

import factory
from django.contrib.auth import get_user_model
from django.utils import timezone
from factory import Faker
from factory.django import DjangoModelFactory

from billing.models import Profile, Subscription, TeamInvite

from . import models

US_STATES = ["IL", "TX", "CA", "GA", "OH", "PA", "NJ", "TN", "IN", "MO"]


class UserFactory(DjangoModelFactory):
    class Meta:
        model = get_user_model()
        django_get_or_create = ("username",)

    username = factory.Sequence(lambda n: f"user{n}")
    email = factory.LazyAttribute(lambda obj: f"{obj.username}@example.com")
    first_name = Faker("first_name")
    last_name = Faker("last_name")
    company_name = Faker("company")
    role = "shipper"
    is_active = True

    @classmethod
    def _create(cls, model_class, *args, **kwargs):
        password = kwargs.pop("password", "password123")
        user = super()._create(model_class, *args, **kwargs)
        user.set_password(password)
        user.save()
        return user


class ShipperFactory(UserFactory):
    username = factory.Sequence(lambda n: f"shipper{n}")
    role = "shipper"


class CarrierFactory(UserFactory):
    username = factory.Sequence(lambda n: f"carrier{n}")
    role = "carrier"
    mc_number = factory.Sequence(lambda n: f"MC{100000 + n}")
    dot_number = factory.Sequence(lambda n: f"{3000000 + n}")


class AdminFactory(UserFactory):
    username = factory.Sequence(lambda n: f"admin{n}")
    role = "admin"
    is_staff = True


class LoadFactory(DjangoModelFactory):
    class Meta:
        model = models.Load

    shipper = factory.SubFactory(ShipperFactory)
    origin_facility_name = Faker("company")
    origin_address = Faker("street_address")
    origin_city = Faker("city")
    origin_state = factory.LazyFunction(lambda: random.choice(US_STATES))
    origin_zip = Faker("numerify", text="#####")
    destination_facility_name = Faker("company")
    destination_address = Faker("street_address")
    destination_city = Faker("city")
    destination_state = factory.LazyFunction(lambda: random.choice(US_STATES))
    destination_zip = Faker("numerify", text="#####")
    pickup_date = factory.LazyFunction(lambda: timezone.localdate() + timedelta(days=2))
    delivery_date = factory.LazyAttribute(lambda o: o.pickup_date + timedelta(days=3))
    equipment_type = models.Load.EquipmentType.DRY_VAN
    commodity = Faker("word")
    weight = factory.LazyFunction(lambda: random.randint(5000, 44000))
    posted_rate = Decimal("2500.00")
    status = models.Load.Status.DRAFT


class PostedLoadFactory(LoadFactory):
    status = models.Load.Status.POSTED
    posted_at = factory.LazyFunction(timezone.now)


class BidFactory(DjangoModelFactory):
    class Meta:
        model = models.Bid

    load = factory.SubFactory(PostedLoadFactory)
    carrier = factory.SubFactory(CarrierFactory)
    bid_amount = Decimal("2400.00")
    expires_at = factory.LazyFunction(lambda: timezone.now() + timedelta(hours=72))


class BookedLoadFactory(LoadFactory):
    """Booked load with its accepted bid; ``carrier`` and ``booked_rate`` follow the bid."""

    status = models.Load.Status.BOOKED
    carrier = factory.SubFactory(CarrierFactory)
    posted_at = factory.LazyFunction(timezone.now)
    booked_at = factory.LazyFunction(timezone.now)
    booked_rate = Decimal("2400.00")

    accepted_bid = factory.RelatedFactory(
        BidFactory,
        factory_related_name="load",
        carrier=factory.SelfAttribute("..carrier"),
        bid_amount=factory.SelfAttribute("..booked_rate"),
        status=models.Bid.Status.ACCEPTED,
    )


class DocumentFactory(DjangoModelFactory):
    class Meta:
        model = models.Document

    load = factory.SubFactory(BookedLoadFactory)
    document_type = models.Document.DocumentType.POD
    storage_key = factory.Sequence(lambda n: f"documents/pod-{n}.pdf")


class PaymentFactory(DjangoModelFactory):
    """Payment for a booked load; pass ``status`` to start it elsewhere in the graph."""

    class Meta:
        model = models.Payment

    load = factory.SubFactory(BookedLoadFactory)
    bid = factory.LazyAttribute(
        lambda o: o.load.bids.get(status=models.Bid.Status.ACCEPTED)
    )
    shipper = factory.SelfAttribute("load.shipper")
    carrier = factory.SelfAttribute("load.carrier")
    amount = factory.SelfAttribute("load.booked_rate")
    status = models.Payment.Status.PENDING


class SubscriptionFactory(DjangoModelFactory):
    """Subscription whose owner already occupies the first seat."""

    class Meta:
        model = Subscription

    user = factory.SubFactory(CarrierFactory)
    plan_type = Subscription.PlanType.CARRIER
    seats = 5
    seats_used = 1
    status = Subscription.Status.ACTIVE

    @factory.post_generation
    def owner_profile(obj, create, extracted, **kwargs):
        if create:
            Profile.objects.update_or_create(
                user=obj.user, defaults={"subscription": obj}
            )


class TeamInviteFactory(DjangoModelFactory):
    class Meta:
        model = TeamInvite

    subscription = factory.SubFactory(SubscriptionFactory)
    created_by = factory.SelfAttribute("subscription.user")
    email = Faker("email")
    seats_allocated = 1
    expires_at = factory.LazyFunction(lambda: timezone.now() + timedelta(days=7))
