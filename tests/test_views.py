import json

import pytest
from django.urls import reverse

from marketplace.models import Bid, Load, Payment
from marketplace.services import payment_rail

pytestmark = pytest.mark.django_db


def post_json(client, url, data=None):
    return client.post(url, data=json.dumps(data or {}), content_type="application/json")


def test_login_required(client, posted_load_factory):
    load = posted_load_factory()
    response = client.get(reverse("load_detail", args=[load.pk]))
    assert response.status_code == 302


def test_create_and_post_load(client, shipper):
    client.force_login(shipper)
    response = post_json(
        client,
        reverse("create_load"),
        {
            "origin_city": "Chicago",
            "origin_state": "IL",
            "destination_city": "Dallas",
            "destination_state": "TX",
            "pickup_date": "2030-03-01",
            "delivery_date": "2030-03-03",
            "equipment_type": "reefer",
            "posted_rate": "3100.00",
        },
    )
    assert response.status_code == 201
    load_id = response.json()["id"]
    assert response.json()["status"] == "draft"

    response = post_json(client, reverse("post_load", args=[load_id]))
    assert response.status_code == 200
    assert response.json()["status"] == "posted"


def test_invalid_date_is_400(client, shipper):
    client.force_login(shipper)
    response = post_json(client, reverse("create_load"), {"pickup_date": "next tuesday"})
    assert response.status_code == 400
    assert response.json()["error"] == "validation"


def test_bad_field_values_are_400(client, shipper):
    client.force_login(shipper)
    response = post_json(
        client,
        reverse("create_load"),
        {"pickup_date": "2025-02-30", "weight": "heavy", "posted_rate": "NaN"},
    )
    assert response.status_code == 400
    errors = response.json()["details"]["errors"]
    assert set(errors) == {"pickup_date", "weight", "posted_rate"}
    assert all(isinstance(message, str) for message in errors["weight"])


def test_non_string_text_fields_are_400(client, held_payment, posted_load_factory, carrier):
    client.force_login(held_payment.carrier)
    response = post_json(
        client, reverse("dispute_payment", args=[held_payment.pk]), {"reason": 5}
    )
    assert response.status_code == 400
    assert Payment.objects.get(pk=held_payment.pk).status == Payment.Status.HELD_IN_ESCROW

    load = posted_load_factory()
    client.force_login(carrier)
    response = post_json(
        client, reverse("submit_bid", args=[load.pk]), {"amount": "900", "notes": ["x"]}
    )
    assert response.status_code == 400
    assert not Bid.objects.filter(load=load).exists()


def test_malformed_json_is_400(client, shipper):
    client.force_login(shipper)
    response = client.post(
        reverse("create_load"), data="{not json", content_type="application/json"
    )
    assert response.status_code == 400


def test_load_detail_lists_actions(client, posted_load_factory):
    load = posted_load_factory()
    client.force_login(load.shipper)
    response = client.get(reverse("load_detail", args=[load.pk]))
    assert response.status_code == 200
    assert "cancel_load" in response.json()["available_actions"]


def test_bid_and_accept_flow(client, posted_load_factory, carrier):
    load = posted_load_factory()

    client.force_login(carrier)
    response = post_json(client, reverse("submit_bid", args=[load.pk]), {"amount": "2250"})
    assert response.status_code == 201
    bid_id = response.json()["id"]

    response = post_json(client, reverse("submit_bid", args=[load.pk]), {"amount": "2200"})
    assert response.status_code == 409
    assert response.json()["code"] == "DuplicateBid"

    client.force_login(load.shipper)
    response = post_json(client, reverse("accept_bid", args=[load.pk, bid_id]))
    assert response.status_code == 200
    body = response.json()
    assert body["load"]["status"] == "booked"
    assert body["payment"]["amount"] == "2250.00"
    assert Bid.objects.get(pk=bid_id).status == Bid.Status.ACCEPTED


def test_carrier_cannot_accept(client, posted_load_factory, bid_factory):
    load = posted_load_factory()
    bid = bid_factory(load=load)
    client.force_login(bid.carrier)
    response = post_json(client, reverse("accept_bid", args=[load.pk, bid.pk]))
    assert response.status_code == 403


def test_missing_load_is_404(client, carrier):
    client.force_login(carrier)
    response = post_json(client, reverse("submit_bid", args=[999999]), {"amount": "100"})
    assert response.status_code == 404
    assert response.json()["code"] == "LoadNotFound"


def test_status_endpoint_reports_transition_details(client, booked_load_factory):
    load = booked_load_factory()
    client.force_login(load.carrier)
    response = post_json(
        client, reverse("change_status", args=[load.pk]), {"status": "completed"}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"
    details = response.json()["details"]
    assert details["current_state"] == "booked"
    assert details["requested_state"] == "completed"
    assert details["actor_role"] == "carrier"


def test_rail_outage_is_502(client, delivered_payment, settings):
    settings.PAYMENT_RAIL_BACKEND = "tests.test_escrow.BrokenRail"
    load = delivered_payment.load
    client.force_login(load.shipper)

    response = post_json(client, reverse("approve_delivery", args=[load.pk]))

    assert response.status_code == 502
    load.refresh_from_db()
    assert load.status == Load.Status.DELIVERED


def test_dispute_and_resolve(client, delivered_payment, admin_user):
    client.force_login(delivered_payment.carrier)
    response = post_json(
        client,
        reverse("dispute_payment", args=[delivered_payment.pk]),
        {"reason": "Unpaid detention"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "disputed"

    client.force_login(admin_user)
    response = post_json(
        client,
        reverse("resolve_dispute", args=[delivered_payment.load_id]),
        {"release_to_carrier": "yes"},
    )
    assert response.status_code == 400

    response = post_json(
        client,
        reverse("resolve_dispute", args=[delivered_payment.load_id]),
        {"release_to_carrier": True, "notes": "Detention verified"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "released"


def test_webhook_opens_escrow(client, payment_factory):
    payment = payment_factory(external_reference="pi_webhook")
    response = client.post(
        reverse("payment_webhook"),
        data=json.dumps({"type": "escrow_held", "payment_id": payment.pk, "reference": "pi_webhook"}),
        content_type="application/json",
    )
    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "held_in_escrow"

    # redelivery is acknowledged
    response = client.post(
        reverse("payment_webhook"),
        data=json.dumps({"type": "escrow_held", "payment_id": payment.pk, "reference": "pi_webhook"}),
        content_type="application/json",
    )
    assert response.status_code == 200
    assert Payment.objects.get(pk=payment.pk).status == Payment.Status.HELD_IN_ESCROW
    assert payment_rail.outbox == []


def test_webhook_acknowledges_declined_charge(client, payment_factory):
    payment = payment_factory(external_reference="pi_declined")
    response = client.post(
        reverse("payment_webhook"),
        data=json.dumps({"type": "failed", "payment_id": payment.pk, "reason": "card declined"}),
        content_type="application/json",
    )
    assert response.status_code == 200
    assert response.json()["payment"]["status"] == "pending"
    assert response.json()["payment"]["failure_reason"] == "card declined"
    assert Payment.objects.get(pk=payment.pk).failure_reason == "card declined"


def test_webhook_syncs_subscription(client, subscription_factory):
    subscription = subscription_factory(seats=2, external_reference="sub_hook")
    response = post_json(
        client,
        reverse("payment_webhook"),
        {
            "type": "subscription_updated",
            "subscription": {
                "reference": "sub_hook",
                "seats": 4,
                "status": "active",
                "current_period_end": 1767225600,
            },
        },
    )
    assert response.status_code == 200
    body = response.json()["subscription"]
    assert body["id"] == subscription.pk
    assert body["seats"] == 4
    assert body["current_period_end"].startswith("2026-01-01T00:00:00")

    response = post_json(
        client,
        reverse("payment_webhook"),
        {"type": "subscription_deleted", "subscription": {"reference": "sub_hook"}},
    )
    assert response.status_code == 200
    assert response.json()["subscription"]["status"] == "cancelled"

    response = post_json(
        client,
        reverse("payment_webhook"),
        {"type": "subscription_updated", "subscription": {"reference": "sub_x", "seats": "many"}},
    )
    assert response.status_code == 400


def test_invite_claim_flow(client, subscription_factory, carrier):
    subscription = subscription_factory(seats=2)
    client.force_login(subscription.user)
    response = post_json(
        client,
        reverse("create_invite", args=[subscription.pk]),
        {"seats_to_allocate": 1, "email": "driver@example.com"},
    )
    assert response.status_code == 201
    token = response.json()["invite_token"]

    response = client.get(reverse("subscription_detail", args=[subscription.pk]))
    assert response.json()["capacity"]["seats_available"] == 0

    client.force_login(carrier)
    response = post_json(client, reverse("claim_invite"), {"invite_token": token})
    assert response.status_code == 200
    assert response.json()["subscription_id"] == subscription.pk

    response = client.get(reverse("subscription_detail", args=[subscription.pk]))
    assert response.status_code == 403


def test_release_endpoint_requires_delivery(client, held_payment, admin_user):
    client.force_login(admin_user)
    response = post_json(client, reverse("release_payment", args=[held_payment.pk]))
    assert response.status_code == 409
    assert response.json()["details"]["current_state"] == "booked"

    response = post_json(
        client, reverse("refund_payment", args=[held_payment.pk]), {"reason": "Carrier no-show"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "refunded"
    assert Load.objects.get(pk=held_payment.load_id).status == Load.Status.CANCELLED
