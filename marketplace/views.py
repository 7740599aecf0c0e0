"""
JSON operation surface for the transaction engine.

Thin adapters: parse the body, build the Actor from the session user, call
one service, serialise the result. Every ServiceError becomes a JSON error
body with a status code chosen by its kind, so callers can tell a business
conflict (409) from a processor outage (502).
"""

import functools
import json
import logging

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from accounts.context import Actor
from billing.services import seats

from .models import Load, Payment
from .policies.load_actions import actions_for
from .serializers import (
    serialize_bid,
    serialize_document,
    serialize_load,
    serialize_payment,
    serialize_subscription,
)
from .services import bids, disputes, escrow, loads
from .services.exceptions import InvalidInput, ServiceError
from .services.payment_rail import SUBSCRIPTION_EVENTS, get_payment_rail

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "validation": 400,
    "authorization": 403,
    "not_found": 404,
    "conflict": 409,
    "external": 502,
    "invariant": 500,
}


def service_endpoint(view):
    """Translate ServiceError into a JSON error response."""

    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except ServiceError as exc:
            status = STATUS_BY_KIND.get(exc.kind, 500)
            if status >= 500:
                logger.error("%s failed: %s", view.__name__, exc, exc_info=True)
            return JsonResponse(exc.as_dict(), status=status)

    return wrapper


def actor_for(request) -> Actor:
    return Actor.for_user(request.user)


def read_json(request) -> dict:
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except ValueError:
        raise InvalidInput("Request body must be valid JSON.")
    if not isinstance(data, dict):
        raise InvalidInput("Request body must be a JSON object.")
    return data


def text_param(data, name, default=""):
    """String field from a JSON body; anything else is a validation error."""
    value = data.get(name, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise InvalidInput(f"{name} must be a string.", **{name: value})
    return value


# ---------------------------------------------------------------------------
# Loads
# ---------------------------------------------------------------------------


@login_required
@require_POST
@service_endpoint
def create_load(request):
    load = loads.create_load(actor_for(request), **read_json(request))
    return JsonResponse(serialize_load(load), status=201)


@login_required
@require_GET
def load_detail(request, load_id):
    load = get_object_or_404(Load, pk=load_id)
    actor = actor_for(request)
    return JsonResponse(serialize_load(load, actions=actions_for(actor, load)))


@login_required
@require_POST
@service_endpoint
def update_load(request, load_id):
    load = loads.update_load(actor_for(request), load_id, **read_json(request))
    return JsonResponse(serialize_load(load))


@login_required
@require_POST
@service_endpoint
def post_load(request, load_id):
    load = loads.post_load(actor_for(request), load_id)
    return JsonResponse(serialize_load(load))


@login_required
@require_POST
@service_endpoint
def cancel_load(request, load_id):
    data = read_json(request)
    load = loads.cancel_load(
        actor_for(request), load_id, reason=text_param(data, "reason")
    )
    return JsonResponse(serialize_load(load))


@login_required
@require_POST
@service_endpoint
def delete_load(request, load_id):
    loads.delete_load(actor_for(request), load_id)
    return JsonResponse({"deleted": load_id})


@login_required
@require_POST
@service_endpoint
def change_status(request, load_id):
    data = read_json(request)
    load = loads.advance_load_status(
        actor_for(request), load_id, text_param(data, "status")
    )
    return JsonResponse(serialize_load(load))


@login_required
@require_POST
@service_endpoint
def approve_delivery(request, load_id):
    load = loads.approve_delivery(actor_for(request), load_id)
    return JsonResponse(
        {
            "load": serialize_load(load),
            "payment": serialize_payment(Payment.objects.get(load=load)),
        }
    )


@login_required
@require_POST
@service_endpoint
def attach_document(request, load_id):
    data = read_json(request)
    document = loads.attach_document(
        actor_for(request),
        load_id,
        text_param(data, "document_type"),
        text_param(data, "storage_key"),
    )
    return JsonResponse(serialize_document(document), status=201)


# ---------------------------------------------------------------------------
# Bids
# ---------------------------------------------------------------------------


@login_required
@require_POST
@service_endpoint
def submit_bid(request, load_id):
    data = read_json(request)
    bid = bids.submit_bid(
        actor_for(request),
        load_id,
        data.get("amount"),
        tracking_url=text_param(data, "tracking_url"),
        notes=text_param(data, "notes"),
    )
    return JsonResponse(serialize_bid(bid), status=201)


@login_required
@require_POST
@service_endpoint
def accept_bid(request, load_id, bid_id):
    load, payment = bids.accept_bid(actor_for(request), load_id, bid_id)
    return JsonResponse(
        {"load": serialize_load(load), "payment": serialize_payment(payment)}
    )


@login_required
@require_POST
@service_endpoint
def reject_bid(request, load_id, bid_id):
    bid = bids.reject_bid(actor_for(request), load_id, bid_id)
    return JsonResponse(serialize_bid(bid))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@login_required
@require_POST
@service_endpoint
def fund_escrow(request, payment_id):
    payment = escrow.start_escrow_charge(actor_for(request), payment_id)
    return JsonResponse(serialize_payment(payment))


@login_required
@require_POST
@service_endpoint
def release_payment(request, payment_id):
    data = read_json(request)
    payment = escrow.release(
        actor_for(request), payment_id, reason=text_param(data, "reason")
    )
    return JsonResponse(serialize_payment(payment))


@login_required
@require_POST
@service_endpoint
def refund_payment(request, payment_id):
    data = read_json(request)
    payment = escrow.refund(
        actor_for(request), payment_id, reason=text_param(data, "reason")
    )
    return JsonResponse(serialize_payment(payment))


@login_required
@require_POST
@service_endpoint
def dispute_payment(request, payment_id):
    data = read_json(request)
    payment = escrow.flag_dispute(
        actor_for(request), payment_id, text_param(data, "reason")
    )
    return JsonResponse(serialize_payment(payment))


@login_required
@require_POST
@service_endpoint
def resolve_dispute(request, load_id):
    data = read_json(request)
    release_to_carrier = data.get("release_to_carrier")
    if not isinstance(release_to_carrier, bool):
        raise InvalidInput("release_to_carrier must be true or false.")
    payment = disputes.resolve_dispute(
        actor_for(request), load_id, release_to_carrier, notes=text_param(data, "notes")
    )
    return JsonResponse(serialize_payment(payment))


@csrf_exempt
@require_POST
@service_endpoint
def payment_webhook(request):
    """Entry point for the payment rail's asynchronous notifications."""
    rail = get_payment_rail()
    event = rail.parse_webhook(
        request.body, request.headers.get("Stripe-Signature", "")
    )
    if event.type in SUBSCRIPTION_EVENTS:
        subscription = seats.sync_subscription(
            event.subscription, deleted=event.type == "subscription_deleted"
        )
        return JsonResponse(
            {
                "received": event.type,
                "subscription": serialize_subscription(subscription)
                if subscription
                else None,
            }
        )
    payment = escrow.handle_rail_event(event)
    return JsonResponse(
        {
            "received": event.type,
            "payment": serialize_payment(payment) if payment else None,
        }
    )
