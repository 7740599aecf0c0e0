"""
Payment Escrow Manager.

State graph::

    pending -> held_in_escrow -> released -> completed
                              -> disputed -> released | refunded
                              -> refunded
                              -> failed

Each operation locks the Payment row, checks the current status, calls the
payment rail (if any) and only then writes the new status. When the rail
fails the transaction rolls back and the payment keeps its prior status, so
the caller can retry. Release and refund move funds at most once: a second
call sees a settled status and raises AlreadySettled before touching the rail.

The load follows the money. Releasing completes a delivered load and is
refused before delivery; refunding cancels the load.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from accounts.context import Actor
from marketplace.models import Load, Payment

from .exceptions import (
    AlreadyDisputed,
    AlreadyEscrowed,
    AlreadySettled,
    ExternalDependencyFailure,
    InvalidInput,
    InvalidTransition,
    InvariantViolation,
    NotEscrowed,
    NotOwner,
    NotPermitted,
    PaymentFrozen,
    PaymentNotFound,
    ServiceError,
)
from .payment_rail import call_rail

logger = logging.getLogger(__name__)


def _lock_payment(payment_id) -> Payment:
    try:
        return Payment.objects.select_for_update().get(pk=payment_id)
    except Payment.DoesNotExist:
        raise PaymentNotFound(payment_id=payment_id)


def _lock_load_and_payment(payment_id):
    """Lock in the engine-wide order: Load first, then its Payment."""
    load_id = (
        Payment.objects.filter(pk=payment_id).values_list("load_id", flat=True).first()
    )
    if load_id is None:
        raise PaymentNotFound(payment_id=payment_id)
    load = Load.objects.select_for_update().get(pk=load_id)
    return load, _lock_payment(payment_id)


def _raise_if_settled(payment):
    if payment.is_settled:
        raise AlreadySettled(
            f"Payment is already {payment.get_status_display().lower()}.",  # type: ignore
            payment_id=payment.pk,
            current_state=payment.status,
        )


def _check_amount(payment):
    """Amount leaving escrow must be what the shipper agreed to at booking."""
    booked_rate = (
        Load.objects.filter(pk=payment.load_id)
        .values_list("booked_rate", flat=True)
        .first()
    )
    if booked_rate != payment.amount:
        logger.error(
            "Payment %s amount %s differs from booked rate %s of load %s",
            payment.pk,
            payment.amount,
            booked_rate,
            payment.load_id,
        )
        raise InvariantViolation(
            "Payment amount does not match the booked rate.",
            payment_id=payment.pk,
            amount=payment.amount,
            booked_rate=booked_rate,
        )


def open_payment(load, bid) -> Payment:
    """Create the pending payment for a just-accepted bid. Caller holds the load lock."""
    payment = Payment.objects.create(
        load=load,
        bid=bid,
        shipper_id=load.shipper_id,
        carrier_id=bid.carrier_id,
        amount=bid.bid_amount,
    )
    logger.info(
        "Payment %s opened for load %s: %s", payment.pk, load.pk, payment.amount
    )
    return payment


@transaction.atomic
def start_escrow_charge(actor: Actor, payment_id) -> Payment:
    """
    Ask the rail to authorise the hold for a pending payment.

    Returns the payment with ``external_reference`` set. The payment stays
    pending until the rail confirms through ``open_escrow``. Calling it again
    returns the same reference.
    """
    payment = _lock_payment(payment_id)
    if not (actor.is_shipper and actor.user_id == payment.shipper_id):
        raise NotOwner("Only the shipper on this load can fund escrow.")
    if payment.status != Payment.Status.PENDING:
        raise AlreadyEscrowed(payment_id=payment.pk, current_state=payment.status)
    if payment.external_reference:
        return payment

    result = call_rail("hold", payment)
    payment.external_reference = result.reference
    payment.save(update_fields=["external_reference", "updated_at"])
    logger.info(
        "Payment %s: hold requested, reference %s", payment.pk, result.reference
    )
    return payment


@transaction.atomic
def open_escrow(payment_id, external_charge_ref) -> Payment:
    """
    PENDING -> HELD_IN_ESCROW once the rail confirms the charge.

    Rail webhooks are retried, so a repeat is expected: it raises
    AlreadyEscrowed and changes nothing.
    """
    if not external_charge_ref:
        raise InvalidInput("external_charge_ref is required.")

    payment = _lock_payment(payment_id)
    if payment.status != Payment.Status.PENDING:
        raise AlreadyEscrowed(payment_id=payment.pk, current_state=payment.status)
    if payment.external_reference and payment.external_reference != external_charge_ref:
        raise InvalidInput(
            "Charge reference does not match the hold requested for this payment.",
            payment_id=payment.pk,
            expected=payment.external_reference,
            received=external_charge_ref,
        )

    payment._transition(
        Payment.Status.HELD_IN_ESCROW,
        external_reference=external_charge_ref,
        escrow_held_at=timezone.now(),
        failure_reason="",
    )
    return payment


def _check_can_release(actor: Actor, payment):
    if actor.is_admin or actor.is_system:
        return
    if payment.status == Payment.Status.DISPUTED:
        raise PaymentFrozen(payment_id=payment.pk)
    if not (actor.is_shipper and actor.user_id == payment.shipper_id):
        raise NotPermitted("Only the shipper or an admin can release escrow.")


@transaction.atomic
def release(actor: Actor, payment_id, reason="") -> Payment:
    """
    Pay the carrier: HELD_IN_ESCROW or DISPUTED -> RELEASED.

    From held_in_escrow the owning shipper (normally via approve_delivery),
    an admin or the auto-release sweep may release. A disputed payment is
    frozen for everyone except an admin resolving the dispute.

    Release is what completion authorises, so the load must be delivered. A
    load still in delivered is completed in the same transaction.
    """
    load, payment = _lock_load_and_payment(payment_id)
    _raise_if_settled(payment)
    if payment.status not in (Payment.Status.HELD_IN_ESCROW, Payment.Status.DISPUTED):
        raise NotEscrowed(payment_id=payment.pk, current_state=payment.status)
    _check_can_release(actor, payment)
    if load.status not in (Load.Status.DELIVERED, Load.Status.COMPLETED):
        raise InvalidTransition(
            load.status,
            Load.Status.COMPLETED,
            actor.role,
            message="Escrow can only be released once the load has been delivered.",
        )
    _check_amount(payment)

    result = call_rail("release", payment)
    if load.status == Load.Status.DELIVERED:
        load.complete(Actor.system())
    payment._transition(
        Payment.Status.RELEASED,
        actor,
        released_at=timezone.now(),
        transfer_reference=result.reference,
        resolution_notes=reason or payment.resolution_notes,
    )
    return payment


@transaction.atomic
def confirm_settlement(payment_id) -> Payment:
    """RELEASED -> COMPLETED when the rail reports the transfer settled."""
    payment = _lock_payment(payment_id)
    if payment.status == Payment.Status.RELEASED:
        payment._transition(Payment.Status.COMPLETED, completed_at=timezone.now())
        return payment
    if payment.is_settled:
        raise AlreadySettled(payment_id=payment.pk, current_state=payment.status)
    raise NotEscrowed(
        "Payment has not been released yet.",
        payment_id=payment.pk,
        current_state=payment.status,
    )


@transaction.atomic
def refund(actor: Actor, payment_id, reason="") -> Payment:
    """
    Return funds to the shipper: HELD_IN_ESCROW or DISPUTED -> REFUNDED.

    A booked, in-transit or delivered load is cancelled with the refund.
    """
    if not (actor.is_admin or actor.is_system):
        raise NotPermitted("Only an admin can refund escrow.")

    load, payment = _lock_load_and_payment(payment_id)
    _raise_if_settled(payment)
    if payment.status not in (Payment.Status.HELD_IN_ESCROW, Payment.Status.DISPUTED):
        raise NotEscrowed(payment_id=payment.pk, current_state=payment.status)

    result = call_rail("refund", payment)
    payment._transition(
        Payment.Status.REFUNDED,
        actor,
        refunded_at=timezone.now(),
        refund_reference=result.reference,
        resolution_notes=reason or payment.resolution_notes,
    )
    if load.status in (
        Load.Status.BOOKED,
        Load.Status.IN_TRANSIT,
        Load.Status.DELIVERED,
    ):
        load.cancel(Actor.system(), reason=reason or "Escrow refunded to shipper")
    return payment


@transaction.atomic
def flag_dispute(actor: Actor, payment_id, dispute_reason) -> Payment:
    """HELD_IN_ESCROW -> DISPUTED. Freezes the payment until an admin resolves it."""
    if not isinstance(dispute_reason, str) or not dispute_reason.strip():
        raise InvalidInput("A dispute reason is required.")

    payment = _lock_payment(payment_id)
    is_party = actor.user_id in (payment.shipper_id, payment.carrier_id)
    if not (is_party or actor.is_admin):
        raise NotPermitted("Only the shipper, the carrier or an admin can dispute.")

    if payment.status == Payment.Status.DISPUTED:
        raise AlreadyDisputed(payment_id=payment.pk)
    _raise_if_settled(payment)
    if payment.status != Payment.Status.HELD_IN_ESCROW:
        raise NotEscrowed(payment_id=payment.pk, current_state=payment.status)

    payment._transition(
        Payment.Status.DISPUTED,
        actor,
        dispute_reason=dispute_reason.strip(),
        disputed_by_id=actor.user_id,
    )
    return payment


@transaction.atomic
def mark_failed(payment_id, reason="") -> Payment:
    """Processor-side failure of a held charge: HELD_IN_ESCROW -> FAILED."""
    payment = _lock_payment(payment_id)
    _raise_if_settled(payment)
    if payment.status != Payment.Status.HELD_IN_ESCROW:
        raise NotEscrowed(payment_id=payment.pk, current_state=payment.status)

    payment._transition(
        Payment.Status.FAILED,
        failed_at=timezone.now(),
        failure_reason=reason,
    )
    return payment


@transaction.atomic
def record_hold_failure(payment_id, reason="") -> Payment:
    """
    The shipper's charge was declined before any funds were held.

    The payment stays PENDING so the shipper can try another card; the
    decline is kept in ``failure_reason`` until a later hold succeeds.
    """
    payment = _lock_payment(payment_id)
    if payment.status != Payment.Status.PENDING:
        raise NotEscrowed(payment_id=payment.pk, current_state=payment.status)

    payment.failure_reason = reason or "Charge declined"
    payment.save(update_fields=["failure_reason", "updated_at"])
    logger.warning(
        "Escrow charge for payment %s (load %s) failed: %s",
        payment.pk,
        payment.load_id,
        payment.failure_reason,
    )
    return payment


def find_payment_for_event(event) -> Payment:
    payments = Payment.objects.all()
    if event.payment_id is not None:
        payments = payments.filter(pk=event.payment_id)
    elif event.reference:
        payments = payments.filter(external_reference=event.reference)
    else:
        raise InvalidInput("Webhook event does not identify a payment.")
    payment = payments.first()
    if payment is None:
        raise PaymentNotFound(payment_id=event.payment_id, reference=event.reference)
    return payment


def handle_rail_event(event):
    """
    Apply a webhook event. Repeats of an already-applied event are
    acknowledged, so the rail stops retrying.
    """
    if event.type == "ignored":
        return None

    payment = find_payment_for_event(event)
    try:
        if event.type == "escrow_held":
            return open_escrow(payment.pk, event.reference or payment.external_reference)
        if event.type == "settled":
            return confirm_settlement(payment.pk)
        if event.type == "failed" and payment.status == Payment.Status.PENDING:
            return record_hold_failure(payment.pk, event.reason)
        if event.type == "failed":
            return mark_failed(payment.pk, event.reason)
    except (AlreadyEscrowed, AlreadySettled) as exc:
        logger.info("Webhook %s for payment %s already applied: %s", event.type, payment.pk, exc)
        return payment
    raise InvalidInput(f"Unknown rail event type '{event.type}'.")


# ---------------------------------------------------------------------------
# Auto-release sweep
# ---------------------------------------------------------------------------


def auto_release_payments(now=None):
    """
    Release escrow for loads delivered more than PAYMENT_AUTO_RELEASE_DAYS ago
    without shipper action, and complete those loads.

    Each candidate is re-checked under its locks, so a shipper approving or
    disputing at the same moment wins cleanly and the sweep skips the row.
    Returns a dict of counts.
    """
    now = now or timezone.now()
    cutoff = now - timedelta(days=settings.PAYMENT_AUTO_RELEASE_DAYS)
    candidates = list(
        Payment.objects.filter(
            status=Payment.Status.HELD_IN_ESCROW,
            load__status=Load.Status.DELIVERED,
            load__delivered_at__lte=cutoff,
        ).values_list("pk", "load_id")
    )

    summary = {"released": 0, "skipped": 0, "failed": 0}
    actor = Actor.system()
    for payment_id, load_id in candidates:
        try:
            with transaction.atomic():
                load = Load.objects.select_for_update().get(pk=load_id)
                payment = _lock_payment(payment_id)
                if (
                    payment.status != Payment.Status.HELD_IN_ESCROW
                    or load.status != Load.Status.DELIVERED
                    or load.delivered_at is None
                    or load.delivered_at > cutoff
                ):
                    summary["skipped"] += 1
                    continue
                load.complete(actor)
                release(actor, payment.pk, reason="Auto-released after delivery")
            summary["released"] += 1
        except ExternalDependencyFailure:
            summary["failed"] += 1
        except ServiceError as exc:
            logger.warning("Auto-release skipped payment %s: %s", payment_id, exc)
            summary["skipped"] += 1

    logger.info(
        "Auto-release sweep: %(released)d released, %(skipped)d skipped, %(failed)d failed",
        summary,
    )
    return summary
