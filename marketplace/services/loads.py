"""
Load lifecycle entry points.

The transition rules live on ``Load``; these functions add what a request
needs around them: the row lock, ownership checks and, for completion, the
escrow release that completion authorises.
"""

import logging

from django.db import transaction
from django.utils import timezone

from accounts.context import Actor
from marketplace.forms import LoadForm, load_form_for
from marketplace.models import Document, Load, Payment

from . import escrow
from .exceptions import (
    InvalidInput,
    InvalidTransition,
    LoadLocked,
    LoadNotFound,
    NotOwner,
    NotPermitted,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(LoadForm.Meta.fields)


def lock_load(load_id) -> Load:
    try:
        return Load.objects.select_for_update().get(pk=load_id)
    except Load.DoesNotExist:
        raise LoadNotFound(load_id=load_id)


def _check_fields(fields):
    unknown = sorted(set(fields) - EDITABLE_FIELDS)
    if unknown:
        raise InvalidInput(
            "These fields cannot be set: " + ", ".join(unknown), fields=unknown
        )


def _validated_form(fields, instance=None):
    _check_fields(fields)
    form = load_form_for(fields, instance=instance)
    if not form.is_valid():
        errors = {
            name: [error["message"] for error in field_errors]
            for name, field_errors in form.errors.get_json_data().items()
        }
        raise InvalidInput(
            "Invalid load fields: " + ", ".join(sorted(errors)), errors=errors
        )
    return form


def _require_owner(actor: Actor, load):
    if not (actor.is_shipper and actor.user_id == load.shipper_id):
        raise NotOwner("Only the shipper who owns this load can do this.")


def create_load(actor: Actor, **fields) -> Load:
    if not actor.is_shipper:
        raise NotPermitted("Only shippers can create loads.", actor_role=actor.role)
    form = _validated_form(fields)

    load = form.save(commit=False)
    load.shipper_id = actor.user_id
    load.save()
    logger.info("Load %s created by shipper %s", load.pk, actor.user_id)
    return load


@transaction.atomic
def update_load(actor: Actor, load_id, **fields) -> Load:
    """Edit a load that has not been booked yet."""
    _check_fields(fields)
    load = lock_load(load_id)
    _require_owner(actor, load)
    if load.status not in Load.PRE_BOOKING:
        raise LoadLocked(
            "Only draft, posted or bidding loads can be edited.",
            load_id=load.pk,
            current_state=load.status,
        )

    return _validated_form(fields, instance=load).save()


@transaction.atomic
def post_load(actor: Actor, load_id) -> Load:
    load = lock_load(load_id)
    load.post(actor)
    return load


@transaction.atomic
def cancel_load(actor: Actor, load_id, reason="") -> Load:
    load = lock_load(load_id)
    load.cancel(actor, reason=reason)
    return load


@transaction.atomic
def delete_load(actor: Actor, load_id):
    load = lock_load(load_id)
    _require_owner(actor, load)
    load.delete()
    logger.info("Load %s deleted by shipper %s", load_id, actor.user_id)


@transaction.atomic
def attach_document(actor: Actor, load_id, document_type, storage_key) -> Document:
    """Record a reference to a file the caller already put in the document store."""
    if document_type not in Document.DocumentType.values:
        raise InvalidInput(
            f"Unknown document type '{document_type}'.",
            allowed=Document.DocumentType.values,
        )
    if not storage_key:
        raise InvalidInput("storage_key is required.")

    load = lock_load(load_id)
    if not (load.is_party(actor, "shipper") or load.is_party(actor, "carrier")):
        raise NotPermitted("Only the shipper or the assigned carrier can attach documents.")

    return Document.objects.create(
        load=load,
        document_type=document_type,
        storage_key=storage_key,
        uploaded_by_id=actor.user_id,
    )


@transaction.atomic
def approve_delivery(actor: Actor, load_id, reason="") -> Load:
    """
    DELIVERED -> COMPLETED by the owning shipper, releasing escrow.

    Approval, completion and release commit together. If the rail fails the
    load stays delivered and the payment stays held, ready for a retry.
    """
    load = lock_load(load_id)
    load.check_transition(Load.Status.COMPLETED, actor)

    try:
        payment = Payment.objects.select_for_update().get(load=load)
    except Payment.DoesNotExist:
        payment = None
    if payment is None or payment.status != Payment.Status.HELD_IN_ESCROW:
        raise InvalidTransition(
            load.status,
            Load.Status.COMPLETED,
            actor.role,
            message="Delivery can only be approved while the payment is held in escrow.",
        )

    now = timezone.now()
    load.documents.filter(document_type=Document.DocumentType.POD).update(
        approved=True, approved_at=now, updated_at=now
    )
    load.complete(actor)
    escrow.release(actor, payment.pk, reason=reason or "Delivery approved by shipper")
    load.refresh_from_db()
    return load


def advance_load_status(actor: Actor, load_id, target) -> Load:
    """Generic status entry point; routes to the operation that owns each edge."""
    if target not in Load.Status.values:
        raise InvalidInput(f"Unknown load status '{target}'.", allowed=Load.Status.values)

    if target == Load.Status.POSTED:
        return post_load(actor, load_id)
    if target == Load.Status.COMPLETED:
        return approve_delivery(actor, load_id)
    if target == Load.Status.CANCELLED:
        return cancel_load(actor, load_id)

    with transaction.atomic():
        load = lock_load(load_id)
        if target == Load.Status.IN_TRANSIT:
            load.start_transit(actor)
        elif target == Load.Status.DELIVERED:
            load.mark_delivered(actor)
        else:
            raise InvalidTransition(
                load.status,
                target,
                actor.role,
                message=f"A load cannot be moved to '{target}' directly.",
            )
    return load
