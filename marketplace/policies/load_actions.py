from marketplace.models import Bid, Load, Payment
from marketplace.policies.roles import is_admin, is_carrier, is_shipper


def actions_for(actor, load: Load) -> list[str]:
    """
    Actions ``actor`` can take on ``load`` right now.

    Pure capability predicate over (actor, load); the services still enforce
    every rule, this only tells a client which buttons to show.
    """
    actions: list[str] = []
    payment = Payment.objects.filter(load=load).first()

    if is_shipper(actor) and actor.user_id == load.shipper_id:
        if load.status in Load.PRE_BOOKING:
            actions.append("update_load")
        if load.can_transition(Load.Status.POSTED, actor):
            actions.append("post_load")
        if load.can_transition(Load.Status.CANCELLED, actor):
            actions.append("cancel_load")
        if load.is_open_for_bids and load.bids.filter(status=Bid.Status.PENDING).exists():
            actions.append("accept_bid")
            actions.append("reject_bid")
        if not load.has_commitments():
            actions.append("delete_load")
        if payment and payment.status == Payment.Status.PENDING:
            actions.append("fund_escrow")
        if (
            load.can_transition(Load.Status.COMPLETED, actor)
            and payment
            and payment.status == Payment.Status.HELD_IN_ESCROW
        ):
            actions.append("approve_delivery")

    if is_carrier(actor):
        if load.is_open_for_bids and not load.bids.filter(
            carrier_id=actor.user_id, status__in=Bid.OPEN
        ).exists():
            actions.append("submit_bid")
        if load.can_transition(Load.Status.IN_TRANSIT, actor):
            actions.append("start_transit")
        if load.can_transition(Load.Status.DELIVERED, actor):
            actions.append("mark_delivered")

    is_party = actor.user_id is not None and actor.user_id in (
        load.shipper_id,
        load.carrier_id,
    )
    if payment and payment.status == Payment.Status.HELD_IN_ESCROW and (
        is_party or is_admin(actor)
    ):
        actions.append("flag_dispute")
    if is_admin(actor) and payment and payment.status == Payment.Status.DISPUTED:
        actions.append("resolve_dispute")

    if is_party and load.status not in (Load.Status.COMPLETED, Load.Status.CANCELLED):
        actions.append("attach_document")
    return actions
