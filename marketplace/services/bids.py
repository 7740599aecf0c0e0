"""
Bid Engine.

Every operation that can change which bid wins a load first takes the row
lock on that Load. Submissions and acceptances for one load are therefore
serialised, while different loads never wait on each other. Under the lock
``accept_bid`` applies its four effects (bid accepted, siblings rejected,
load booked, payment opened) in one transaction.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import URLValidator
from django.db import transaction
from django.utils import timezone

from accounts.context import Actor
from marketplace.models import Bid, Load
from marketplace.signals import (
    bid_accepted,
    bid_submitted,
    bids_expired,
    send_on_commit,
)

from . import escrow
from .exceptions import (
    BidExpired,
    BidNotFound,
    BidNotPending,
    DuplicateBid,
    InvalidInput,
    LoadAlreadyBooked,
    LoadNotBiddable,
    NotOwner,
    NotPermitted,
)
from .loads import lock_load

logger = logging.getLogger(__name__)


MAX_BID_AMOUNT = Decimal("99999999.99")


def _parse_amount(amount) -> Decimal:
    if isinstance(amount, bool):
        raise InvalidInput("Bid amount must be a number.", amount=amount)
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput("Bid amount must be a number.", amount=amount)
    if not value.is_finite() or value <= 0:
        raise InvalidInput("Bid amount must be greater than zero.", amount=amount)
    if value > MAX_BID_AMOUNT:
        raise InvalidInput(
            f"Bid amount cannot exceed {MAX_BID_AMOUNT}.", amount=amount
        )
    return value.quantize(Decimal("0.01"))


def _check_bid_text(tracking_url, notes):
    if not isinstance(tracking_url, str) or not isinstance(notes, str):
        raise InvalidInput("tracking_url and notes must be strings.")
    if tracking_url:
        try:
            URLValidator()(tracking_url)
        except ValidationError:
            raise InvalidInput("tracking_url must be a valid URL.", tracking_url=tracking_url)


def _raise_unless_biddable(load):
    if load.status in Load.BOOKED_OR_LATER:
        raise LoadAlreadyBooked(load_id=load.pk, current_state=load.status)
    if load.status not in Load.OPEN_FOR_BIDS:
        raise LoadNotBiddable(
            load_id=load.pk,
            current_state=load.status,
            required_state=list(Load.OPEN_FOR_BIDS),
        )


def _lock_bid(load, bid_id) -> Bid:
    try:
        return Bid.objects.select_for_update().get(pk=bid_id, load=load)
    except Bid.DoesNotExist:
        raise BidNotFound(load_id=load.pk, bid_id=bid_id)


@transaction.atomic
def submit_bid(actor: Actor, load_id, amount, tracking_url="", notes="") -> Bid:
    if not actor.is_carrier:
        raise NotPermitted("Only carriers can bid on loads.", actor_role=actor.role)
    bid_amount = _parse_amount(amount)
    _check_bid_text(tracking_url, notes)

    load = lock_load(load_id)
    if load.status not in Load.OPEN_FOR_BIDS:
        raise LoadNotBiddable(
            load_id=load.pk,
            current_state=load.status,
            required_state=list(Load.OPEN_FOR_BIDS),
        )

    now = timezone.now()
    # an unswept stale bid must not block a fresh one
    Bid.objects.filter(
        load=load, carrier_id=actor.user_id, status=Bid.Status.PENDING, expires_at__lte=now
    ).update(status=Bid.Status.EXPIRED, updated_at=now)

    if Bid.objects.filter(
        load=load, carrier_id=actor.user_id, status__in=Bid.OPEN
    ).exists():
        raise DuplicateBid(load_id=load.pk, carrier_id=actor.user_id)

    bid = Bid.objects.create(
        load=load,
        carrier_id=actor.user_id,
        bid_amount=bid_amount,
        expires_at=now + timedelta(hours=settings.BID_EXPIRY_HOURS),
        tracking_url=tracking_url,
        notes=notes,
    )
    if load.status == Load.Status.POSTED:
        load.open_bidding()

    logger.info(
        "Bid %s submitted on load %s by carrier %s: %s",
        bid.pk,
        load.pk,
        actor.user_id,
        bid_amount,
    )
    send_on_commit(bid_submitted, sender=Bid, bid=bid)
    return bid


@transaction.atomic
def accept_bid(actor: Actor, load_id, bid_id):
    """
    Book the load to one bid. Returns ``(load, payment)``.

    The first acceptance to commit wins; any other caller, blocked on the
    load lock until then, sees a booked load and gets LoadAlreadyBooked.
    """
    load = lock_load(load_id)
    if not (actor.is_shipper and actor.user_id == load.shipper_id):
        raise NotOwner("Only the shipper who owns this load can accept bids.")
    _raise_unless_biddable(load)

    bid = _lock_bid(load, bid_id)
    now = timezone.now()
    if bid.status != Bid.Status.PENDING:
        raise BidNotPending(bid_id=bid.pk, current_state=bid.status)
    if bid.is_expired(now):
        raise BidExpired(bid_id=bid.pk, expires_at=bid.expires_at)

    bid.status = Bid.Status.ACCEPTED
    bid.responded_at = now
    bid.save(update_fields=["status", "responded_at", "updated_at"])

    siblings = Bid.objects.filter(load=load, status__in=Bid.OPEN).exclude(pk=bid.pk)
    rejected_ids = list(siblings.values_list("pk", flat=True))
    siblings.update(status=Bid.Status.REJECTED, responded_at=now, updated_at=now)

    load.book(bid)
    payment = escrow.open_payment(load, bid)

    logger.info(
        "Bid %s accepted on load %s, %d sibling bids rejected, payment %s opened",
        bid.pk,
        load.pk,
        len(rejected_ids),
        payment.pk,
    )
    send_on_commit(
        bid_accepted,
        sender=Bid,
        bid=bid,
        payment=payment,
        rejected_bid_ids=rejected_ids,
    )
    return load, payment


@transaction.atomic
def reject_bid(actor: Actor, load_id, bid_id) -> Bid:
    load = lock_load(load_id)
    if not (actor.is_shipper and actor.user_id == load.shipper_id):
        raise NotOwner("Only the shipper who owns this load can reject bids.")

    bid = _lock_bid(load, bid_id)
    if bid.status not in Bid.OPEN:
        raise BidNotPending(bid_id=bid.pk, current_state=bid.status)

    bid.status = Bid.Status.REJECTED
    bid.responded_at = timezone.now()
    bid.save(update_fields=["status", "responded_at", "updated_at"])
    logger.info("Bid %s on load %s rejected", bid.pk, load.pk)
    return bid


def expire_stale_bids(now=None) -> int:
    """
    Mark pending bids past ``expires_at`` as expired.

    A single conditional UPDATE: a bid accepted or rejected a moment earlier
    no longer matches ``status=pending`` and is left alone. Safe to run
    repeatedly and alongside live requests.
    """
    now = now or timezone.now()
    count = Bid.objects.filter(
        status=Bid.Status.PENDING, expires_at__lt=now
    ).update(status=Bid.Status.EXPIRED, updated_at=now)
    if count:
        logger.info("Expired %d stale bids", count)
        send_on_commit(bids_expired, sender=Bid, count=count)
    return count
