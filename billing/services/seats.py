"""
Seat Allocation Manager.

Capacity invariant, checked under the subscription row lock::

    seats_used + sum(seats_allocated - seats_claimed over reserving invites) <= seats

where a reserving invite is pending and not yet expired. Lock order is
always Subscription then TeamInvite, so two operations on the same
subscription queue up instead of deadlocking, and claims against one invite
are linearizable.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone

from accounts.context import Actor
from billing.models import Profile, Subscription, TeamInvite
from billing.signals import (
    invite_claimed,
    invite_created,
    invite_revoked,
    team_member_removed,
)
from marketplace.services.exceptions import (
    AlreadyTeamMember,
    InsufficientSeats,
    InvalidInput,
    InviteExhausted,
    InviteExpired,
    InviteNotFound,
    InviteRevoked,
    InvariantViolation,
    MemberNotFound,
    NotOwner,
    NotPermitted,
    SubscriptionInactive,
    SubscriptionNotFound,
)
from marketplace.signals import send_on_commit

logger = logging.getLogger(__name__)

User = get_user_model()


def _lock_subscription(subscription_id) -> Subscription:
    try:
        return Subscription.objects.select_for_update().get(pk=subscription_id)
    except Subscription.DoesNotExist:
        raise SubscriptionNotFound(subscription_id=subscription_id)


def _require_owner(actor: Actor, subscription):
    if actor.user_id != subscription.user_id:
        raise NotOwner("Only the subscription owner can manage the team.")


def _require_usable(subscription):
    if not subscription.is_usable:
        raise SubscriptionInactive(
            subscription_id=subscription.pk, current_state=subscription.status
        )


def reserved_seats(subscription, now=None) -> int:
    reserved = (
        TeamInvite.objects.filter(subscription=subscription)
        .reserving(now)
        .aggregate(total=Sum(F("seats_allocated") - F("seats_claimed")))["total"]
    )
    return reserved or 0


def available_seats(subscription, now=None) -> int:
    return subscription.seats - subscription.seats_used - reserved_seats(subscription, now)


def capacity_report(subscription, now=None) -> dict:
    reserved = reserved_seats(subscription, now)
    return {
        "seats": subscription.seats,
        "seats_used": subscription.seats_used,
        "seats_reserved": reserved,
        "seats_available": subscription.seats - subscription.seats_used - reserved,
    }


def _assert_capacity(subscription):
    report = capacity_report(subscription)
    if report["seats_available"] < 0:
        logger.error("Subscription %s over-allocated: %s", subscription.pk, report)
        raise InvariantViolation(
            "Subscription seats are over-allocated.",
            subscription_id=subscription.pk,
            **report,
        )


@transaction.atomic
def start_subscription(owner, plan_type, billing_cycle="monthly", seats=1, status=None):
    """Create a subscription; the owner takes the first seat."""
    if seats < 1:
        raise InvalidInput("A subscription needs at least one seat.", seats=seats)
    profile, _ = Profile.objects.select_for_update().get_or_create(user=owner)
    if profile.subscription_id:
        raise AlreadyTeamMember(subscription_id=profile.subscription_id)

    subscription = Subscription.objects.create(
        user=owner,
        plan_type=plan_type,
        billing_cycle=billing_cycle,
        seats=seats,
        seats_used=1,
        status=status or Subscription.Status.TRIALING,
    )
    profile.subscription = subscription
    profile.claimed_via_invite = None
    profile.save(update_fields=["subscription", "claimed_via_invite", "updated_at"])
    logger.info(
        "Subscription %s started by user %s with %d seats",
        subscription.pk,
        owner.pk,
        seats,
    )
    return subscription


@transaction.atomic
def create_invite(actor: Actor, subscription_id, seats_to_allocate, email="") -> TeamInvite:
    if not isinstance(seats_to_allocate, int) or seats_to_allocate < 1:
        raise InvalidInput(
            "seats_to_allocate must be a positive integer.",
            seats_to_allocate=seats_to_allocate,
        )

    subscription = _lock_subscription(subscription_id)
    _require_owner(actor, subscription)
    _require_usable(subscription)

    available = available_seats(subscription)
    if seats_to_allocate > available:
        raise InsufficientSeats(
            f"Not enough seats available. Available: {available}, requested: {seats_to_allocate}.",
            available=available,
            requested=seats_to_allocate,
        )

    invite = TeamInvite.objects.create(
        subscription=subscription,
        created_by_id=actor.user_id,
        email=email or "",
        seats_allocated=seats_to_allocate,
        expires_at=timezone.now() + timedelta(days=settings.INVITE_EXPIRY_DAYS),
    )
    _assert_capacity(subscription)

    logger.info(
        "Invite %s created on subscription %s for %d seats",
        invite.pk,
        subscription.pk,
        seats_to_allocate,
    )
    send_on_commit(invite_created, sender=TeamInvite, invite=invite)
    return invite


@transaction.atomic
def claim_invite(actor: Actor, token) -> Profile:
    if not token or actor.user_id is None:
        raise InvalidInput("An invite token and a signed-in user are required.")

    subscription_id = (
        TeamInvite.objects.filter(invite_token=token)
        .values_list("subscription_id", flat=True)
        .first()
    )
    if subscription_id is None:
        raise InviteNotFound()

    subscription = _lock_subscription(subscription_id)
    invite = TeamInvite.objects.select_for_update().get(invite_token=token)

    now = timezone.now()
    if invite.status == TeamInvite.Status.REVOKED:
        raise InviteRevoked(invite_id=invite.pk)
    if invite.status == TeamInvite.Status.EXPIRED or (
        invite.status == TeamInvite.Status.PENDING and invite.is_expired(now)
    ):
        raise InviteExpired(invite_id=invite.pk, expires_at=invite.expires_at)
    if invite.status == TeamInvite.Status.CLAIMED or invite.seats_remaining < 1:
        raise InviteExhausted(invite_id=invite.pk)
    _require_usable(subscription)

    profile, _ = Profile.objects.select_for_update().get_or_create(user_id=actor.user_id)
    if profile.subscription_id:
        raise AlreadyTeamMember(subscription_id=profile.subscription_id)
    if subscription.seats_used >= subscription.seats:
        raise InsufficientSeats(
            "The subscription has no free seats; the owner must add more.",
            seats=subscription.seats,
            seats_used=subscription.seats_used,
        )

    invite.seats_claimed = F("seats_claimed") + 1
    invite.claimed_at = now
    invite.save(update_fields=["seats_claimed", "claimed_at", "updated_at"])
    invite.refresh_from_db(fields=["seats_claimed"])
    if invite.seats_claimed >= invite.seats_allocated:
        invite.status = TeamInvite.Status.CLAIMED
        invite.save(update_fields=["status", "updated_at"])

    subscription.seats_used = F("seats_used") + 1
    subscription.save(update_fields=["seats_used", "updated_at"])
    subscription.refresh_from_db(fields=["seats_used"])

    profile.subscription = subscription
    profile.claimed_via_invite = invite
    profile.save(update_fields=["subscription", "claimed_via_invite", "updated_at"])
    _assert_capacity(subscription)

    logger.info(
        "Invite %s claimed by user %s (%d/%d), subscription %s now uses %d/%d seats",
        invite.pk,
        actor.user_id,
        invite.seats_claimed,
        invite.seats_allocated,
        subscription.pk,
        subscription.seats_used,
        subscription.seats,
    )
    send_on_commit(invite_claimed, sender=TeamInvite, invite=invite, profile=profile)
    return profile


@transaction.atomic
def revoke_invite(actor: Actor, invite_id) -> TeamInvite:
    subscription_id = (
        TeamInvite.objects.filter(pk=invite_id)
        .values_list("subscription_id", flat=True)
        .first()
    )
    if subscription_id is None:
        raise InviteNotFound(invite_id=invite_id)

    subscription = _lock_subscription(subscription_id)
    invite = TeamInvite.objects.select_for_update().get(pk=invite_id)
    _require_owner(actor, subscription)

    if invite.status == TeamInvite.Status.REVOKED:
        raise InviteRevoked(invite_id=invite.pk)
    if invite.status == TeamInvite.Status.CLAIMED:
        raise InviteExhausted("A fully claimed invite cannot be revoked.", invite_id=invite.pk)
    if invite.status == TeamInvite.Status.EXPIRED:
        raise InviteExpired(invite_id=invite.pk)

    invite.status = TeamInvite.Status.REVOKED
    invite.save(update_fields=["status", "updated_at"])
    _assert_capacity(subscription)
    logger.info(
        "Invite %s revoked, %d unclaimed seats returned to subscription %s",
        invite.pk,
        invite.seats_remaining,
        subscription.pk,
    )
    send_on_commit(invite_revoked, sender=TeamInvite, invite=invite)
    return invite


@transaction.atomic
def remove_team_member(actor: Actor, user_id) -> Subscription:
    """
    Detach a member from the owner's subscription and free their seat.

    The invite they came through keeps its ``seats_claimed``: that count is
    history, the freed seat goes back to the general pool. The profile keeps
    ``claimed_via_invite`` for the same reason.
    """
    subscription_id = actor.subscription_id or (
        Subscription.objects.filter(user_id=actor.user_id)
        .exclude(status=Subscription.Status.CANCELLED)
        .values_list("pk", flat=True)
        .first()
    )
    if subscription_id is None:
        raise SubscriptionNotFound("You do not own a subscription.")

    subscription = _lock_subscription(subscription_id)
    _require_owner(actor, subscription)
    if user_id == subscription.user_id:
        raise NotPermitted("The owner cannot be removed from their own subscription.")

    try:
        profile = Profile.objects.select_for_update().get(
            user_id=user_id, subscription=subscription
        )
    except Profile.DoesNotExist:
        raise MemberNotFound(user_id=user_id, subscription_id=subscription.pk)

    profile.subscription = None
    profile.save(update_fields=["subscription", "updated_at"])

    if subscription.seats_used < 1:
        logger.error("Subscription %s has a member but no seats in use", subscription.pk)
        raise InvariantViolation(
            "Seat count is out of sync with team members.",
            subscription_id=subscription.pk,
        )
    subscription.seats_used = F("seats_used") - 1
    subscription.save(update_fields=["seats_used", "updated_at"])
    subscription.refresh_from_db(fields=["seats_used"])

    logger.info(
        "User %s removed from subscription %s, %d/%d seats in use",
        user_id,
        subscription.pk,
        subscription.seats_used,
        subscription.seats,
    )
    send_on_commit(
        team_member_removed,
        sender=Subscription,
        subscription=subscription,
        user_id=user_id,
    )
    return subscription


def _resize(subscription, seats):
    committed = subscription.seats_used + reserved_seats(subscription)
    if seats < committed:
        raise InsufficientSeats(
            f"{committed} seats are in use or reserved by invites.",
            requested=seats,
            committed=committed,
        )
    subscription.seats = seats


@transaction.atomic
def change_seat_count(actor: Actor, subscription_id, seats) -> Subscription:
    """Buy or drop seats. Never below what members and open invites already hold."""
    if not isinstance(seats, int) or seats < 1:
        raise InvalidInput("seats must be a positive integer.", seats=seats)

    subscription = _lock_subscription(subscription_id)
    if not actor.is_admin:
        _require_owner(actor, subscription)

    _resize(subscription, seats)
    subscription.save(update_fields=["seats", "updated_at"])
    logger.info("Subscription %s resized to %d seats", subscription.pk, seats)
    return subscription


# processor status -> Subscription.Status
RAIL_STATUSES = {
    "active": Subscription.Status.ACTIVE,
    "trialing": Subscription.Status.TRIALING,
    "past_due": Subscription.Status.PAST_DUE,
    "unpaid": Subscription.Status.PAST_DUE,
    "incomplete": Subscription.Status.PAST_DUE,
    "paused": Subscription.Status.PAST_DUE,
    "canceled": Subscription.Status.CANCELLED,
    "incomplete_expired": Subscription.Status.CANCELLED,
}


def _subscription_for_change(change):
    """Existing subscription id for a processor subscription, creating it if new."""
    subscription_id = (
        Subscription.objects.filter(external_reference=change.reference)
        .values_list("pk", flat=True)
        .first()
    )
    if subscription_id is not None:
        return subscription_id

    owner = User.objects.filter(pk=change.owner_id).first() if change.owner_id else None
    if owner is None:
        raise InvalidInput(
            "Subscription event does not identify a known owner.",
            reference=change.reference,
            owner_id=change.owner_id,
        )

    # checkout may finish after the owner already started a plan in-app
    existing = (
        Subscription.objects.filter(user=owner, external_reference="")
        .exclude(status=Subscription.Status.CANCELLED)
        .values_list("pk", flat=True)
        .first()
    )
    if existing is not None:
        return existing

    plan_type = change.plan_type
    if plan_type not in Subscription.PlanType.values:
        plan_type = (
            Subscription.PlanType.SHIPPER
            if owner.role == User.Role.SHIPPER
            else Subscription.PlanType.CARRIER
        )
    billing_cycle = change.billing_cycle
    if billing_cycle not in Subscription.BillingCycle.values:
        billing_cycle = Subscription.BillingCycle.MONTHLY
    return start_subscription(
        owner,
        plan_type,
        billing_cycle=billing_cycle,
        seats=max(change.seats or 1, 1),
        status=RAIL_STATUSES.get(change.status),
    ).pk


@transaction.atomic
def sync_subscription(change, deleted=False):
    """
    Apply a subscription notification from the payment processor.

    Created and updated events upsert by processor reference: seats follow the
    item quantity, and status, period end, plan and billing cycle are copied
    over. A quantity below what members and open invites hold is not applied;
    the owner has to free seats first. Deleted events cancel the subscription
    and leave its members in place. Returns None for a deletion of a
    subscription that was never synced.
    """
    if not change.reference:
        raise InvalidInput("Subscription event has no reference.")

    if deleted and not Subscription.objects.filter(external_reference=change.reference).exists():
        logger.info("Ignoring deletion of unknown subscription %s", change.reference)
        return None

    subscription = _lock_subscription(_subscription_for_change(change))
    subscription.external_reference = change.reference

    if deleted:
        subscription.status = Subscription.Status.CANCELLED
    elif change.status:
        status = RAIL_STATUSES.get(change.status)
        if status is None:
            logger.warning(
                "Subscription %s: unknown processor status '%s' left as %s",
                subscription.pk,
                change.status,
                subscription.status,
            )
        else:
            subscription.status = status

    if change.current_period_end is not None:
        subscription.current_period_end = change.current_period_end
    if change.plan_type in Subscription.PlanType.values:
        subscription.plan_type = change.plan_type
    if change.billing_cycle in Subscription.BillingCycle.values:
        subscription.billing_cycle = change.billing_cycle

    if not deleted and change.seats and change.seats != subscription.seats:
        try:
            _resize(subscription, change.seats)
        except InsufficientSeats as exc:
            logger.warning(
                "Subscription %s: processor quantity %d not applied: %s",
                subscription.pk,
                change.seats,
                exc,
            )

    subscription.save()
    logger.info(
        "Subscription %s synced from %s: %s, %d seats, period ends %s",
        subscription.pk,
        change.reference,
        subscription.status,
        subscription.seats,
        subscription.current_period_end,
    )
    return subscription


def expire_invites(now=None) -> int:
    """Conditional update; an invite claimed or revoked meanwhile is untouched."""
    now = now or timezone.now()
    count = TeamInvite.objects.filter(
        status=TeamInvite.Status.PENDING, expires_at__lte=now
    ).update(status=TeamInvite.Status.EXPIRED, updated_at=now)
    if count:
        logger.info("Expired %d team invites", count)
    return count
