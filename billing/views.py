from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_GET, require_POST

from marketplace.serializers import (
    serialize_invite,
    serialize_profile,
    serialize_subscription,
)
from marketplace.services.exceptions import NotOwner
from marketplace.views import actor_for, read_json, service_endpoint, text_param

from .models import Subscription
from .services import seats


@login_required
@require_GET
@service_endpoint
def subscription_detail(request, subscription_id):
    subscription = get_object_or_404(Subscription, pk=subscription_id)
    actor = actor_for(request)
    if actor.user_id != subscription.user_id and not actor.is_admin:
        raise NotOwner("Only the subscription owner can view seat usage.")
    return JsonResponse(
        serialize_subscription(subscription, capacity=seats.capacity_report(subscription))
    )


@login_required
@require_POST
@service_endpoint
def create_invite(request, subscription_id):
    data = read_json(request)
    invite = seats.create_invite(
        actor_for(request),
        subscription_id,
        data.get("seats_to_allocate"),
        email=text_param(data, "email"),
    )
    return JsonResponse(serialize_invite(invite, include_token=True), status=201)


@login_required
@require_POST
@service_endpoint
def claim_invite(request):
    data = read_json(request)
    profile = seats.claim_invite(actor_for(request), text_param(data, "invite_token"))
    return JsonResponse(serialize_profile(profile))


@login_required
@require_POST
@service_endpoint
def revoke_invite(request, invite_id):
    invite = seats.revoke_invite(actor_for(request), invite_id)
    return JsonResponse(serialize_invite(invite))


@login_required
@require_POST
@service_endpoint
def remove_team_member(request, user_id):
    subscription = seats.remove_team_member(actor_for(request), user_id)
    return JsonResponse(serialize_subscription(subscription))


@login_required
@require_POST
@service_endpoint
def change_seat_count(request, subscription_id):
    data = read_json(request)
    subscription = seats.change_seat_count(
        actor_for(request), subscription_id, data.get("seats")
    )
    return JsonResponse(serialize_subscription(subscription))
