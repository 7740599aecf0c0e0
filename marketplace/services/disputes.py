"""
Dispute Resolver.

An admin settles a disputed payment one way or the other, using the escrow
manager's release and refund. The load follows the money: paying the carrier
completes the load and needs it delivered first; refunding the shipper
cancels it.
"""

import logging

from django.db import transaction

from accounts.context import Actor
from marketplace.models import Payment

from . import escrow
from .exceptions import AlreadySettled, NotDisputed, NotPermitted, PaymentNotFound
from .loads import lock_load

logger = logging.getLogger(__name__)


@transaction.atomic
def resolve_dispute(actor: Actor, load_id, release_to_carrier, notes="") -> Payment:
    if not actor.is_admin:
        raise NotPermitted("Only an admin can resolve disputes.", actor_role=actor.role)

    load = lock_load(load_id)
    try:
        payment = Payment.objects.select_for_update().get(load=load)
    except Payment.DoesNotExist:
        raise PaymentNotFound(load_id=load_id)

    if payment.is_settled:
        raise AlreadySettled(
            "This dispute has already been resolved.",
            payment_id=payment.pk,
            current_state=payment.status,
        )
    if payment.status != Payment.Status.DISPUTED:
        raise NotDisputed(payment_id=payment.pk, current_state=payment.status)

    if release_to_carrier:
        payment = escrow.release(actor, payment.pk, reason=notes)
    else:
        payment = escrow.refund(actor, payment.pk, reason=notes)

    logger.info(
        "Dispute on load %s resolved by admin %s: %s",
        load.pk,
        actor.user_id,
        "released to carrier" if release_to_carrier else "refunded to shipper",
    )
    return payment
