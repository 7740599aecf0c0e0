from decimal import Decimal

import pytest

from accounts.context import Actor
from marketplace.models import Load, Payment
from marketplace.services import escrow, loads
from marketplace.services.exceptions import (
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
)
from marketplace.services.payment_rail import (
    LocalPaymentRail,
    RailError,
    RailEvent,
    TransientRailError,
    call_rail,
)

pytestmark = pytest.mark.django_db


class FlakyRail(LocalPaymentRail):
    """Local rail that fails transiently a set number of times per call."""

    failures = 0
    calls = []

    def release(self, payment, idempotency_key):
        type(self).calls.append(idempotency_key)
        if type(self).failures:
            type(self).failures -= 1
            raise TransientRailError("connection reset")
        return super().release(payment, idempotency_key)


class BrokenRail(LocalPaymentRail):
    def release(self, payment, idempotency_key):
        raise RailError("card declined")


@pytest.fixture
def flaky_rail(settings):
    settings.PAYMENT_RAIL_BACKEND = "tests.test_escrow.FlakyRail"
    settings.PAYMENT_RAIL_MAX_ATTEMPTS = 3
    FlakyRail.calls = []
    FlakyRail.failures = 0
    return FlakyRail


def test_start_escrow_charge_is_idempotent(payment_factory, local_rail):
    payment = payment_factory()
    shipper_actor = Actor.for_user(payment.shipper)

    first = escrow.start_escrow_charge(shipper_actor, payment.pk)
    second = escrow.start_escrow_charge(shipper_actor, payment.pk)

    assert first.external_reference
    assert first.external_reference == second.external_reference
    assert first.status == Payment.Status.PENDING
    assert len(local_rail) == 1
    assert local_rail[0]["idempotency_key"] == f"payment-{payment.pk}-hold"


def test_only_shipper_funds_escrow(payment_factory):
    payment = payment_factory()
    with pytest.raises(NotOwner):
        escrow.start_escrow_charge(Actor.for_user(payment.carrier), payment.pk)


def test_open_escrow_once(payment_factory):
    payment = payment_factory()
    held = escrow.open_escrow(payment.pk, "pi_abc")
    assert held.status == Payment.Status.HELD_IN_ESCROW
    assert held.escrow_held_at is not None

    with pytest.raises(AlreadyEscrowed):
        escrow.open_escrow(payment.pk, "pi_abc")


def test_open_escrow_reference_must_match_hold(payment_factory):
    payment = payment_factory(external_reference="pi_expected")
    with pytest.raises(InvalidInput):
        escrow.open_escrow(payment.pk, "pi_other")
    payment.refresh_from_db()
    assert payment.status == Payment.Status.PENDING


def test_release_pays_carrier_once(delivered_payment, local_rail):
    shipper_actor = Actor.for_user(delivered_payment.shipper)

    released = escrow.release(shipper_actor, delivered_payment.pk)
    assert released.status == Payment.Status.RELEASED
    assert released.released_at is not None
    delivered_payment.load.refresh_from_db()
    assert delivered_payment.load.status == Load.Status.COMPLETED

    with pytest.raises(AlreadySettled):
        escrow.release(shipper_actor, delivered_payment.pk)
    assert [c["operation"] for c in local_rail] == ["release"]


def test_release_before_delivery_is_refused(held_payment, local_rail):
    load = held_payment.load
    with pytest.raises(InvalidTransition):
        escrow.release(Actor.for_user(held_payment.shipper), held_payment.pk)

    Load.objects.filter(pk=load.pk).update(status=Load.Status.IN_TRANSIT)
    with pytest.raises(InvalidTransition):
        escrow.release(Actor.system(), held_payment.pk)

    held_payment.refresh_from_db()
    load.refresh_from_db()
    assert held_payment.status == Payment.Status.HELD_IN_ESCROW
    assert load.status == Load.Status.IN_TRANSIT
    assert local_rail == []


def test_approve_delivery_after_refused_early_release(held_payment):
    load = held_payment.load
    shipper_actor = Actor.for_user(load.shipper)
    carrier_actor = Actor.for_user(load.carrier)
    with pytest.raises(InvalidTransition):
        escrow.release(shipper_actor, held_payment.pk)

    loads.advance_load_status(carrier_actor, load.pk, Load.Status.IN_TRANSIT)
    loads.attach_document(carrier_actor, load.pk, "pod", "pod.pdf")
    loads.advance_load_status(carrier_actor, load.pk, Load.Status.DELIVERED)
    completed = loads.approve_delivery(shipper_actor, load.pk)

    held_payment.refresh_from_db()
    assert completed.status == Load.Status.COMPLETED
    assert held_payment.status == Payment.Status.RELEASED


def test_release_requires_escrow(payment_factory):
    payment = payment_factory()
    with pytest.raises(NotEscrowed):
        escrow.release(Actor.for_user(payment.shipper), payment.pk)


def test_carrier_cannot_release(held_payment):
    with pytest.raises(NotPermitted):
        escrow.release(Actor.for_user(held_payment.carrier), held_payment.pk)


def test_release_refuses_amount_drift(delivered_payment):
    Load.objects.filter(pk=delivered_payment.load_id).update(booked_rate=Decimal("1.00"))
    with pytest.raises(InvariantViolation):
        escrow.release(Actor.system(), delivered_payment.pk)
    delivered_payment.refresh_from_db()
    assert delivered_payment.status == Payment.Status.HELD_IN_ESCROW


def test_payment_amount_is_immutable(held_payment):
    payment = Payment.objects.get(pk=held_payment.pk)
    payment.amount = Decimal("99.00")
    with pytest.raises(InvariantViolation):
        payment.save()


def test_refund_admin_only(held_payment, admin_user, local_rail):
    with pytest.raises(NotPermitted):
        escrow.refund(Actor.for_user(held_payment.shipper), held_payment.pk)

    refunded = escrow.refund(Actor.for_user(admin_user), held_payment.pk, reason="Load lost")
    assert refunded.status == Payment.Status.REFUNDED
    assert refunded.refund_reference.startswith("re_")
    assert refunded.resolution_notes == "Load lost"
    held_payment.load.refresh_from_db()
    assert held_payment.load.status == Load.Status.CANCELLED
    assert held_payment.load.cancellation_reason == "Load lost"

    with pytest.raises(AlreadySettled):
        escrow.refund(Actor.for_user(admin_user), held_payment.pk)
    assert len(local_rail) == 1


def test_settlement_completes_released_payment(delivered_payment):
    escrow.release(Actor.system(), delivered_payment.pk)
    completed = escrow.confirm_settlement(delivered_payment.pk)
    assert completed.status == Payment.Status.COMPLETED
    with pytest.raises(AlreadySettled):
        escrow.confirm_settlement(delivered_payment.pk)


def test_dispute_freezes_payment(held_payment):
    carrier_actor = Actor.for_user(held_payment.carrier)
    disputed = escrow.flag_dispute(carrier_actor, held_payment.pk, "  Short paid  ")
    assert disputed.status == Payment.Status.DISPUTED
    assert disputed.dispute_reason == "Short paid"
    assert disputed.disputed_by_id == held_payment.carrier_id

    with pytest.raises(PaymentFrozen):
        escrow.release(Actor.for_user(held_payment.shipper), held_payment.pk)
    with pytest.raises(AlreadyDisputed):
        escrow.flag_dispute(carrier_actor, held_payment.pk, "again")


def test_dispute_needs_reason_and_party(held_payment, carrier):
    with pytest.raises(InvalidInput):
        escrow.flag_dispute(Actor.for_user(held_payment.shipper), held_payment.pk, " ")
    with pytest.raises(NotPermitted):
        escrow.flag_dispute(Actor.for_user(carrier), held_payment.pk, "not mine")


def test_cannot_dispute_settled_or_pending(delivered_payment, payment_factory):
    escrow.release(Actor.system(), delivered_payment.pk)
    with pytest.raises(AlreadySettled):
        escrow.flag_dispute(
            Actor.for_user(delivered_payment.shipper), delivered_payment.pk, "late"
        )

    pending = payment_factory()
    with pytest.raises(NotEscrowed):
        escrow.flag_dispute(Actor.for_user(pending.shipper), pending.pk, "early")


def test_transient_failures_are_retried_with_same_key(delivered_payment, flaky_rail):
    flaky_rail.failures = 2

    released = escrow.release(Actor.system(), delivered_payment.pk)

    assert released.status == Payment.Status.RELEASED
    assert flaky_rail.calls == [f"payment-{delivered_payment.pk}-release"] * 3


def test_exhausted_retries_leave_state_untouched(delivered_payment, flaky_rail):
    flaky_rail.failures = 5
    load = delivered_payment.load

    with pytest.raises(ExternalDependencyFailure) as excinfo:
        loads.approve_delivery(Actor.for_user(load.shipper), load.pk)

    assert excinfo.value.kind == "external"
    assert len(flaky_rail.calls) == 3
    load.refresh_from_db()
    delivered_payment.refresh_from_db()
    assert load.status == Load.Status.DELIVERED
    assert delivered_payment.status == Payment.Status.HELD_IN_ESCROW

    flaky_rail.failures = 0
    completed = loads.approve_delivery(Actor.for_user(load.shipper), load.pk)
    assert completed.status == Load.Status.COMPLETED


def test_permanent_rail_error_is_not_retried(delivered_payment, settings):
    settings.PAYMENT_RAIL_BACKEND = "tests.test_escrow.BrokenRail"
    with pytest.raises(ExternalDependencyFailure):
        escrow.release(Actor.system(), delivered_payment.pk)
    delivered_payment.refresh_from_db()
    delivered_payment.load.refresh_from_db()
    assert delivered_payment.status == Payment.Status.HELD_IN_ESCROW
    assert delivered_payment.load.status == Load.Status.DELIVERED


def test_call_rail_replays_idempotent_result(held_payment):
    rail = LocalPaymentRail()
    first = call_rail("release", held_payment, rail=rail)
    second = call_rail("release", held_payment, rail=rail)
    assert first.reference == second.reference


def test_webhook_events_drive_escrow(payment_factory):
    payment = payment_factory(external_reference="pi_hook")

    held = escrow.handle_rail_event(RailEvent(type="escrow_held", reference="pi_hook"))
    assert held.status == Payment.Status.HELD_IN_ESCROW

    # rails redeliver: a repeat is acknowledged, not an error
    again = escrow.handle_rail_event(RailEvent(type="escrow_held", reference="pi_hook"))
    assert again.pk == payment.pk

    failed = escrow.handle_rail_event(
        RailEvent(type="failed", payment_id=payment.pk, reason="insufficient funds")
    )
    assert failed.status == Payment.Status.FAILED
    assert failed.failure_reason == "insufficient funds"

    assert escrow.handle_rail_event(RailEvent(type="ignored")) is None


def test_failed_payment_is_terminal(held_payment, payment_factory):
    with pytest.raises(NotEscrowed):
        escrow.mark_failed(payment_factory().pk, "card declined")

    failed = escrow.mark_failed(held_payment.pk, "card declined")
    assert failed.status == Payment.Status.FAILED
    assert failed.failed_at is not None

    with pytest.raises(AlreadySettled):
        escrow.release(Actor.for_user(held_payment.shipper), held_payment.pk, "")
    with pytest.raises(AlreadySettled):
        escrow.mark_failed(held_payment.pk, "again")


def test_declined_charge_keeps_payment_pending(payment_factory):
    payment = payment_factory(external_reference="pi_declined")

    declined = escrow.handle_rail_event(
        RailEvent(type="failed", reference="pi_declined", reason="card declined")
    )
    assert declined.status == Payment.Status.PENDING
    assert declined.failure_reason == "card declined"

    # a second card goes through and clears the decline
    held = escrow.handle_rail_event(RailEvent(type="escrow_held", reference="pi_declined"))
    assert held.status == Payment.Status.HELD_IN_ESCROW
    assert held.failure_reason == ""
