import threading
from datetime import timedelta
from decimal import Decimal
from io import StringIO

import pytest
from django.core.management import call_command
from django.db import connection
from django.utils import timezone

from accounts.context import Actor
from marketplace.models import Bid, Load, Payment
from marketplace.services import bids
from marketplace.services.exceptions import (
    BidExpired,
    BidNotPending,
    DuplicateBid,
    InvalidInput,
    LoadAlreadyBooked,
    LoadNotBiddable,
    NotOwner,
    NotPermitted,
)

pytestmark = pytest.mark.django_db


def test_submit_bid_creates_pending_bid_with_expiry(posted_load_factory, carrier, settings):
    settings.BID_EXPIRY_HOURS = 24
    load = posted_load_factory()
    before = timezone.now()

    bid = bids.submit_bid(
        Actor.for_user(carrier),
        load.pk,
        "2350.456",
        tracking_url="https://track.example.com/abc",
    )

    assert bid.status == Bid.Status.PENDING
    assert bid.bid_amount == Decimal("2350.46")
    assert before + timedelta(hours=24) <= bid.expires_at
    assert bid.expires_at <= timezone.now() + timedelta(hours=24)


@pytest.mark.parametrize("amount", ["0", "-5", "abc", None, "NaN", "1e30", True])
def test_submit_bid_rejects_bad_amount(posted_load_factory, carrier, amount):
    load = posted_load_factory()
    with pytest.raises(InvalidInput):
        bids.submit_bid(Actor.for_user(carrier), load.pk, amount)
    assert not Bid.objects.exists()


def test_shipper_cannot_bid(posted_load_factory, shipper):
    load = posted_load_factory()
    with pytest.raises(NotPermitted):
        bids.submit_bid(Actor.for_user(shipper), load.pk, "1000")


@pytest.mark.parametrize("status", [Load.Status.DRAFT, Load.Status.CANCELLED])
def test_cannot_bid_on_closed_load(load_factory, carrier, status):
    load = load_factory(status=status)
    with pytest.raises(LoadNotBiddable):
        bids.submit_bid(Actor.for_user(carrier), load.pk, "1000")


def test_cannot_bid_on_booked_load(booked_load_factory, carrier):
    load = booked_load_factory()
    with pytest.raises(LoadNotBiddable):
        bids.submit_bid(Actor.for_user(carrier), load.pk, "1000")


def test_one_open_bid_per_carrier(posted_load_factory, carrier):
    load = posted_load_factory()
    bids.submit_bid(Actor.for_user(carrier), load.pk, "2000")
    with pytest.raises(DuplicateBid):
        bids.submit_bid(Actor.for_user(carrier), load.pk, "1900")


def test_stale_bid_does_not_block_new_one(posted_load_factory, carrier, bid_factory):
    load = posted_load_factory()
    stale = bid_factory(
        load=load, carrier=carrier, expires_at=timezone.now() - timedelta(minutes=1)
    )

    fresh = bids.submit_bid(Actor.for_user(carrier), load.pk, "1900")

    stale.refresh_from_db()
    assert stale.status == Bid.Status.EXPIRED
    assert fresh.status == Bid.Status.PENDING


def test_accept_bid_books_load_and_opens_payment(posted_load_factory, carrier_factory):
    load = posted_load_factory()
    winner = bids.submit_bid(Actor.for_user(carrier_factory()), load.pk, "2200")
    loser = bids.submit_bid(Actor.for_user(carrier_factory()), load.pk, "2300")

    booked, payment = bids.accept_bid(Actor.for_user(load.shipper), load.pk, winner.pk)

    winner.refresh_from_db()
    loser.refresh_from_db()
    assert winner.status == Bid.Status.ACCEPTED
    assert winner.responded_at is not None
    assert loser.status == Bid.Status.REJECTED
    assert booked.status == Load.Status.BOOKED
    assert booked.carrier_id == winner.carrier_id
    assert booked.booked_rate == winner.bid_amount
    assert payment.status == Payment.Status.PENDING
    assert payment.amount == winner.bid_amount
    assert payment.shipper_id == load.shipper_id
    assert payment.carrier_id == winner.carrier_id
    assert payment.bid_id == winner.pk


def test_accept_bid_owner_only(posted_load_factory, carrier, shipper):
    load = posted_load_factory()
    bid = bids.submit_bid(Actor.for_user(carrier), load.pk, "2200")
    with pytest.raises(NotOwner):
        bids.accept_bid(Actor.for_user(shipper), load.pk, bid.pk)


def test_accept_expired_bid(posted_load_factory, bid_factory):
    load = posted_load_factory()
    bid = bid_factory(load=load, expires_at=timezone.now() - timedelta(seconds=1))
    with pytest.raises(BidExpired):
        bids.accept_bid(Actor.for_user(load.shipper), load.pk, bid.pk)
    load.refresh_from_db()
    assert load.status == Load.Status.POSTED


def test_accept_rejected_bid(posted_load_factory, bid_factory):
    load = posted_load_factory()
    bid = bid_factory(load=load, status=Bid.Status.REJECTED)
    with pytest.raises(BidNotPending):
        bids.accept_bid(Actor.for_user(load.shipper), load.pk, bid.pk)


def test_second_acceptance_loses(posted_load_factory, carrier_factory):
    load = posted_load_factory()
    shipper_actor = Actor.for_user(load.shipper)
    first = bids.submit_bid(Actor.for_user(carrier_factory()), load.pk, "500")
    second = bids.submit_bid(Actor.for_user(carrier_factory()), load.pk, "520")

    booked, payment = bids.accept_bid(shipper_actor, load.pk, first.pk)
    with pytest.raises(LoadAlreadyBooked):
        bids.accept_bid(shipper_actor, load.pk, second.pk)

    booked.refresh_from_db()
    second.refresh_from_db()
    assert booked.carrier_id == first.carrier_id
    assert payment.amount == Decimal("500.00")
    assert second.status == Bid.Status.REJECTED

    assert Bid.objects.filter(load=load, status=Bid.Status.ACCEPTED).count() == 1
    assert Payment.objects.filter(load=load).count() == 1


def test_reject_bid(posted_load_factory, carrier):
    load = posted_load_factory()
    bid = bids.submit_bid(Actor.for_user(carrier), load.pk, "2200")
    rejected = bids.reject_bid(Actor.for_user(load.shipper), load.pk, bid.pk)
    assert rejected.status == Bid.Status.REJECTED

    with pytest.raises(BidNotPending):
        bids.reject_bid(Actor.for_user(load.shipper), load.pk, bid.pk)


def test_expire_stale_bids_only_touches_pending(posted_load_factory, bid_factory):
    load = posted_load_factory()
    past = timezone.now() - timedelta(hours=1)
    stale = bid_factory(load=load, expires_at=past)
    live = bid_factory(load=load)
    rejected = bid_factory(load=load, expires_at=past, status=Bid.Status.REJECTED)

    assert bids.expire_stale_bids() == 1
    assert bids.expire_stale_bids() == 0

    stale.refresh_from_db()
    live.refresh_from_db()
    rejected.refresh_from_db()
    assert stale.status == Bid.Status.EXPIRED
    assert live.status == Bid.Status.PENDING
    assert rejected.status == Bid.Status.REJECTED


def test_expire_bids_command(bid_factory):
    bid_factory(expires_at=timezone.now() - timedelta(hours=1))
    out = StringIO()
    call_command("expire_bids", stdout=out)
    assert "Expired 1 bids." in out.getvalue()


@pytest.mark.django_db(transaction=True)
def test_concurrent_acceptances_book_exactly_once(posted_load_factory, carrier_factory):
    load = posted_load_factory()
    shipper_actor = Actor.for_user(load.shipper)
    bid_ids = [
        bids.submit_bid(Actor.for_user(carrier_factory()), load.pk, amount).pk
        for amount in ("2000", "2050", "2100", "2150")
    ]

    barrier = threading.Barrier(len(bid_ids))
    outcomes = []

    def accept(bid_id):
        barrier.wait()
        try:
            bids.accept_bid(shipper_actor, load.pk, bid_id)
            outcomes.append("booked")
        except LoadAlreadyBooked:
            outcomes.append("lost")
        finally:
            connection.close()

    threads = [threading.Thread(target=accept, args=(pk,)) for pk in bid_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["booked", "lost", "lost", "lost"]
    assert Bid.objects.filter(load=load, status=Bid.Status.ACCEPTED).count() == 1
    assert Payment.objects.filter(load=load).count() == 1
