"""
Payment rail backends.

The escrow service never talks to a processor directly. It asks
``get_payment_rail()`` for the configured backend (``PAYMENT_RAIL_BACKEND``)
and calls it through ``call_rail``, which adds the idempotency key and the
bounded retry policy.

Backends:

- ``LocalPaymentRail`` settles in-process and records every call in the
  module-level ``outbox`` (the same idea as Django's locmem email backend).
  Used in development and tests.
- ``StripePaymentRail`` holds funds with a manual-capture PaymentIntent,
  releases by capturing it and refunds by cancelling or refunding it.

Both backends also translate subscription notifications into a
``SubscriptionChange`` for the seat allocation service.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from datetime import timezone as dt_timezone
from decimal import Decimal
from typing import Optional

import stripe
from django.conf import settings
from django.utils.module_loading import import_string

from .exceptions import ExternalDependencyFailure, InvalidInput

logger = logging.getLogger(__name__)


class RailError(Exception):
    """The processor rejected the request. Retrying will not help."""


class TransientRailError(RailError):
    """Timeout, connection reset, rate limit. Safe to retry with the same key."""


@dataclass(frozen=True)
class RailResult:
    reference: str
    status: str = "succeeded"
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionChange:
    """Billing-side view of a processor subscription."""

    reference: str
    owner_id: Optional[int] = None
    seats: Optional[int] = None
    status: str = ""
    current_period_end: Optional[datetime] = None
    plan_type: str = ""
    billing_cycle: str = ""


@dataclass(frozen=True)
class RailEvent:
    """Webhook notification translated into marketplace terms."""

    # escrow_held / settled / failed / subscription_updated /
    # subscription_deleted / ignored
    type: str
    reference: str = ""
    payment_id: Optional[int] = None
    reason: str = ""
    subscription: Optional[SubscriptionChange] = None


SUBSCRIPTION_EVENTS = ("subscription_updated", "subscription_deleted")


def _timestamp(value):
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


def _int_or_none(value):
    return int(value) if value not in (None, "") else None


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


class PaymentRail:
    def hold(self, payment, idempotency_key) -> RailResult:
        raise NotImplementedError

    def release(self, payment, idempotency_key) -> RailResult:
        raise NotImplementedError

    def refund(self, payment, idempotency_key) -> RailResult:
        raise NotImplementedError

    def parse_webhook(self, payload: bytes, signature: str = "") -> RailEvent:
        raise NotImplementedError


# Calls made against LocalPaymentRail, oldest first. Tests clear it.
outbox = []


class LocalPaymentRail(PaymentRail):
    """In-process rail. Replays the first result for a repeated idempotency key."""

    _results = {}

    def _record(self, operation, payment, idempotency_key, prefix):
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        result = RailResult(reference=f"{prefix}_{uuid.uuid4().hex[:16]}")
        self._results[idempotency_key] = result
        outbox.append(
            {
                "operation": operation,
                "payment_id": payment.pk,
                "amount": payment.amount,
                "idempotency_key": idempotency_key,
                "reference": result.reference,
            }
        )
        return result

    def hold(self, payment, idempotency_key):
        return self._record("hold", payment, idempotency_key, "pi")

    def release(self, payment, idempotency_key):
        return self._record("release", payment, idempotency_key, "tr")

    def refund(self, payment, idempotency_key):
        return self._record("refund", payment, idempotency_key, "re")

    def parse_webhook(self, payload, signature=""):
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise InvalidInput("Webhook payload is not valid JSON.") from exc
        event_type = data.get("type", "ignored")
        if event_type in SUBSCRIPTION_EVENTS:
            fields = data.get("subscription") or {}
            try:
                change = SubscriptionChange(
                    reference=fields.get("reference", ""),
                    owner_id=_int_or_none(fields.get("owner_id")),
                    seats=_int_or_none(fields.get("seats")),
                    status=fields.get("status", ""),
                    current_period_end=_timestamp(fields.get("current_period_end")),
                    plan_type=fields.get("plan_type", ""),
                    billing_cycle=fields.get("billing_cycle", ""),
                )
            except (TypeError, ValueError, AttributeError) as exc:
                raise InvalidInput("Malformed subscription event.") from exc
            return RailEvent(type=event_type, reference=change.reference, subscription=change)
        return RailEvent(
            type=event_type,
            reference=data.get("reference", ""),
            payment_id=data.get("payment_id"),
            reason=data.get("reason", ""),
        )

    @classmethod
    def reset(cls):
        cls._results.clear()
        outbox.clear()


class StripePaymentRail(PaymentRail):
    """Escrow on Stripe: authorise on hold, capture on release."""

    # Stripe event type -> RailEvent type
    EVENT_TYPES = {
        "payment_intent.amount_capturable_updated": "escrow_held",
        "payment_intent.succeeded": "settled",
        "payment_intent.payment_failed": "failed",
    }
    SUBSCRIPTION_EVENT_TYPES = {
        "customer.subscription.created": "subscription_updated",
        "customer.subscription.updated": "subscription_updated",
        "customer.subscription.deleted": "subscription_deleted",
    }

    def __init__(self, api_key=None, webhook_secret=None, currency=None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.currency = currency or settings.PAYMENT_CURRENCY

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise TransientRailError(str(exc)) from exc
        except stripe.StripeError as exc:
            raise RailError(str(exc)) from exc

    def hold(self, payment, idempotency_key):
        intent = self._call(
            stripe.PaymentIntent.create,
            amount=to_minor_units(payment.amount),
            currency=self.currency,
            capture_method="manual",
            metadata={"payment_id": payment.pk, "load_id": payment.load_id},
            idempotency_key=idempotency_key,
        )
        return RailResult(reference=intent.id, status=intent.status)

    def release(self, payment, idempotency_key):
        intent = self._call(
            stripe.PaymentIntent.capture,
            payment.external_reference,
            idempotency_key=idempotency_key,
        )
        if intent.status != "succeeded":
            raise RailError(f"Capture ended in status '{intent.status}'.")
        return RailResult(reference=intent.id, status=intent.status)

    def refund(self, payment, idempotency_key):
        intent = self._call(stripe.PaymentIntent.retrieve, payment.external_reference)
        if intent.status == "requires_capture":
            # never captured: dropping the authorisation returns the funds
            cancelled = self._call(
                stripe.PaymentIntent.cancel,
                payment.external_reference,
                idempotency_key=idempotency_key,
            )
            return RailResult(reference=cancelled.id, status=cancelled.status)

        refund = self._call(
            stripe.Refund.create,
            payment_intent=payment.external_reference,
            idempotency_key=idempotency_key,
        )
        return RailResult(reference=refund.id, status=refund.status)

    def parse_webhook(self, payload, signature=""):
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise InvalidInput("Webhook signature verification failed.") from exc

        obj = event["data"]["object"]
        if event["type"] in self.SUBSCRIPTION_EVENT_TYPES:
            try:
                change = self._subscription_change(obj)
            except (TypeError, ValueError) as exc:
                raise InvalidInput("Malformed subscription event.") from exc
            return RailEvent(
                type=self.SUBSCRIPTION_EVENT_TYPES[event["type"]],
                reference=change.reference,
                subscription=change,
            )

        event_type = self.EVENT_TYPES.get(event["type"], "ignored")
        payment_id = (obj.get("metadata") or {}).get("payment_id")
        last_error = obj.get("last_payment_error") or {}
        return RailEvent(
            type=event_type,
            reference=obj.get("id", ""),
            payment_id=int(payment_id) if payment_id else None,
            reason=last_error.get("message", ""),
        )

    @staticmethod
    def _subscription_change(subscription):
        """Seats come from the first item's quantity; the owner from metadata."""
        items = (subscription.get("items") or {}).get("data") or [{}]
        item = items[0]
        interval = ((item.get("price") or {}).get("recurring") or {}).get("interval")
        metadata = subscription.get("metadata") or {}
        # newer API versions report the period on the item
        period_end = subscription.get("current_period_end") or item.get("current_period_end")
        return SubscriptionChange(
            reference=subscription.get("id", ""),
            owner_id=_int_or_none(metadata.get("user_id")),
            seats=item.get("quantity") or 1,
            status=subscription.get("status", ""),
            current_period_end=_timestamp(period_end),
            plan_type=metadata.get("plan_type", ""),
            billing_cycle={"year": "annual", "month": "monthly"}.get(interval, ""),
        )


def get_payment_rail(backend=None) -> PaymentRail:
    return import_string(backend or settings.PAYMENT_RAIL_BACKEND)()


def idempotency_key(payment, operation):
    return f"payment-{payment.pk}-{operation}"


def call_rail(operation, payment, rail=None):
    """
    Run ``rail.<operation>(payment, key)`` with retries.

    Transient errors are retried with exponential backoff up to
    PAYMENT_RAIL_MAX_ATTEMPTS, always with the same idempotency key, so a
    retry can never move funds twice. Anything else, or running out of
    attempts, becomes ExternalDependencyFailure.
    """
    rail = rail or get_payment_rail()
    key = idempotency_key(payment, operation)
    attempts = max(1, settings.PAYMENT_RAIL_MAX_ATTEMPTS)
    backoff = settings.PAYMENT_RAIL_RETRY_BACKOFF

    for attempt in range(1, attempts + 1):
        try:
            return getattr(rail, operation)(payment, key)
        except TransientRailError as exc:
            if attempt == attempts:
                logger.error(
                    "Payment rail %s for payment %s failed after %d attempts: %s",
                    operation,
                    payment.pk,
                    attempts,
                    exc,
                )
                raise ExternalDependencyFailure(
                    operation=operation, payment_id=payment.pk, attempts=attempts
                ) from exc
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "Payment rail %s for payment %s failed (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                payment.pk,
                attempt,
                attempts,
                delay,
                exc,
            )
            if delay:
                time.sleep(delay)
        except RailError as exc:
            logger.error(
                "Payment rail rejected %s for payment %s: %s", operation, payment.pk, exc
            )
            raise ExternalDependencyFailure(
                f"The payment processor rejected the {operation}: {exc}",
                operation=operation,
                payment_id=payment.pk,
            ) from exc
