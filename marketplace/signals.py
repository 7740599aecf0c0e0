"""
Commit-time events.

Receivers only ever observe committed state: ``send_on_commit`` defers the
send until the surrounding transaction commits and uses ``send_robust`` so a
failing receiver is logged instead of propagated. Nothing in the engine
depends on a receiver running.
"""

import logging

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

# sender=Load, load=, previous=, actor=
load_status_changed = Signal()
# sender=Bid, bid=
bid_submitted = Signal()
# sender=Bid, bid=, payment=, rejected_bid_ids=
bid_accepted = Signal()
# sender=Bid, count=
bids_expired = Signal()
# sender=Payment, payment=, previous=
payment_status_changed = Signal()


def send_on_commit(signal, sender, **kwargs):
    def _send():
        for receiver, response in signal.send_robust(sender=sender, **kwargs):
            if isinstance(response, Exception):
                logger.error(
                    "Receiver %r failed for %s: %s",
                    receiver,
                    sender.__name__,
                    response,
                    exc_info=response,
                )

    transaction.on_commit(_send)
