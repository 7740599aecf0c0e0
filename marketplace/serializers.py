"""Plain-dict views of the marketplace models for JSON responses."""


def _money(value):
    return None if value is None else str(value)


def _dt(value):
    return None if value is None else value.isoformat()


def serialize_load(load, actions=None):
    data = {
        "id": load.pk,
        "shipper_id": load.shipper_id,
        "carrier_id": load.carrier_id,
        "status": load.status,
        "origin": {
            "facility_name": load.origin_facility_name,
            "address": load.origin_address,
            "city": load.origin_city,
            "state": load.origin_state,
            "zip": load.origin_zip,
        },
        "destination": {
            "facility_name": load.destination_facility_name,
            "address": load.destination_address,
            "city": load.destination_city,
            "state": load.destination_state,
            "zip": load.destination_zip,
        },
        "pickup_date": _dt(load.pickup_date),
        "delivery_date": _dt(load.delivery_date),
        "equipment_type": load.equipment_type,
        "commodity": load.commodity,
        "weight": load.weight,
        "is_public": load.is_public,
        "requires_eld": load.requires_eld,
        "posted_rate": _money(load.posted_rate),
        "booked_rate": _money(load.booked_rate),
        "posted_at": _dt(load.posted_at),
        "booked_at": _dt(load.booked_at),
        "delivered_at": _dt(load.delivered_at),
        "completed_at": _dt(load.completed_at),
        "cancelled_at": _dt(load.cancelled_at),
    }
    if actions is not None:
        data["available_actions"] = actions
    return data


def serialize_bid(bid):
    return {
        "id": bid.pk,
        "load_id": bid.load_id,
        "carrier_id": bid.carrier_id,
        "bid_amount": _money(bid.bid_amount),
        "status": bid.status,
        "expires_at": _dt(bid.expires_at),
        "tracking_url": bid.tracking_url,
    }


def serialize_payment(payment):
    return {
        "id": payment.pk,
        "load_id": payment.load_id,
        "shipper_id": payment.shipper_id,
        "carrier_id": payment.carrier_id,
        "amount": _money(payment.amount),
        "status": payment.status,
        "escrow_held_at": _dt(payment.escrow_held_at),
        "released_at": _dt(payment.released_at),
        "completed_at": _dt(payment.completed_at),
        "refunded_at": _dt(payment.refunded_at),
        "dispute_reason": payment.dispute_reason,
        "failure_reason": payment.failure_reason,
        "external_reference": payment.external_reference,
    }


def serialize_document(document):
    return {
        "id": document.pk,
        "load_id": document.load_id,
        "document_type": document.document_type,
        "storage_key": document.storage_key,
        "approved": document.approved,
    }


def serialize_subscription(subscription, capacity=None):
    data = {
        "id": subscription.pk,
        "owner_id": subscription.user_id,
        "plan_type": subscription.plan_type,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "seats": subscription.seats,
        "seats_used": subscription.seats_used,
        "current_period_end": _dt(subscription.current_period_end),
    }
    if capacity is not None:
        data["capacity"] = capacity
    return data


def serialize_invite(invite, include_token=False):
    data = {
        "id": invite.pk,
        "subscription_id": invite.subscription_id,
        "email": invite.email,
        "seats_allocated": invite.seats_allocated,
        "seats_claimed": invite.seats_claimed,
        "status": invite.status,
        "expires_at": _dt(invite.expires_at),
    }
    if include_token:
        data["invite_token"] = invite.invite_token
    return data


def serialize_profile(profile):
    return {
        "user_id": profile.user_id,
        "subscription_id": profile.subscription_id,
        "claimed_via_invite": profile.claimed_via_invite_id,
    }
