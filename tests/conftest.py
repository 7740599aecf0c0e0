import pytest
from django.utils import timezone

from accounts.context import Actor
from marketplace import factories
from marketplace.models import Payment
from marketplace.services import payment_rail


@pytest.fixture(autouse=True)
def local_rail():
    """Fresh in-process payment rail for every test."""
    payment_rail.LocalPaymentRail.reset()
    yield payment_rail.outbox
    payment_rail.LocalPaymentRail.reset()


@pytest.fixture
def actor():
    def make_actor(user):
        # team_profile may have been cached before a subscription existed
        user.refresh_from_db()
        return Actor.for_user(user)

    return make_actor


@pytest.fixture
def system_actor():
    return Actor.system()


@pytest.fixture
def user_factory():
    return factories.UserFactory


@pytest.fixture
def shipper_factory():
    return factories.ShipperFactory


@pytest.fixture
def carrier_factory():
    return factories.CarrierFactory


@pytest.fixture
def admin_factory():
    return factories.AdminFactory


@pytest.fixture
def load_factory():
    return factories.LoadFactory


@pytest.fixture
def posted_load_factory():
    return factories.PostedLoadFactory


@pytest.fixture
def booked_load_factory():
    return factories.BookedLoadFactory


@pytest.fixture
def bid_factory():
    return factories.BidFactory


@pytest.fixture
def document_factory():
    return factories.DocumentFactory


@pytest.fixture
def payment_factory():
    return factories.PaymentFactory


@pytest.fixture
def subscription_factory():
    return factories.SubscriptionFactory


@pytest.fixture
def team_invite_factory():
    return factories.TeamInviteFactory


@pytest.fixture
def shipper():
    return factories.ShipperFactory()


@pytest.fixture
def carrier():
    return factories.CarrierFactory()


@pytest.fixture
def admin_user():
    return factories.AdminFactory()


@pytest.fixture
def held_payment(payment_factory):
    """Payment held in escrow for a booked load, as the rail would leave it."""
    return payment_factory(
        status=Payment.Status.HELD_IN_ESCROW, external_reference="pi_test_hold"
    )


@pytest.fixture
def delivered_payment(held_payment, document_factory):
    """Held payment whose load has been delivered with a POD on file."""
    load = held_payment.load
    document_factory(load=load)
    load.status = load.Status.DELIVERED
    load.in_transit_at = timezone.now()
    load.delivered_at = timezone.now()
    load.save()
    return held_payment
