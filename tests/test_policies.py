import pytest

from accounts.context import Actor
from marketplace.models import Load, Payment
from marketplace.policies.load_actions import actions_for

pytestmark = pytest.mark.django_db


def test_actor_from_user(shipper, subscription_factory):
    actor = Actor.for_user(shipper)
    assert actor.is_shipper
    assert actor.subscription_id is None

    subscription = subscription_factory()
    owner = Actor.for_user(subscription.user)
    assert owner.is_carrier
    assert owner.subscription_id == subscription.pk


def test_system_actor():
    system = Actor.system()
    assert system.is_system
    assert system.user_id is None
    assert str(system) == "system"


def test_shipper_actions_on_draft(load_factory):
    load = load_factory()
    actions = actions_for(Actor.for_user(load.shipper), load)
    assert {"update_load", "post_load", "cancel_load", "delete_load"} <= set(actions)
    assert "accept_bid" not in actions


def test_other_shipper_gets_nothing(posted_load_factory, shipper):
    load = posted_load_factory()
    assert actions_for(Actor.for_user(shipper), load) == []


def test_carrier_can_bid_once(posted_load_factory, carrier, bid_factory):
    load = posted_load_factory()
    assert actions_for(Actor.for_user(carrier), load) == ["submit_bid"]

    bid_factory(load=load, carrier=carrier)
    assert "submit_bid" not in actions_for(Actor.for_user(carrier), load)


def test_assigned_carrier_on_booked_load(booked_load_factory):
    load = booked_load_factory()
    actions = actions_for(Actor.for_user(load.carrier), load)
    assert "start_transit" in actions
    assert "attach_document" in actions
    assert "submit_bid" not in actions


def test_shipper_sees_fund_then_approve(payment_factory):
    payment = payment_factory()
    load = payment.load
    shipper = Actor.for_user(load.shipper)
    assert "fund_escrow" in actions_for(shipper, load)
    assert "delete_load" not in actions_for(shipper, load)

    Payment.objects.filter(pk=payment.pk).update(status=Payment.Status.HELD_IN_ESCROW)
    Load.objects.filter(pk=load.pk).update(status=Load.Status.DELIVERED)
    load.refresh_from_db()
    actions = actions_for(shipper, load)
    assert "approve_delivery" in actions
    assert "flag_dispute" in actions


def test_admin_resolves_disputes(payment_factory, admin_user):
    payment = payment_factory(status=Payment.Status.DISPUTED)
    assert actions_for(Actor.for_user(admin_user), payment.load) == ["resolve_dispute"]
