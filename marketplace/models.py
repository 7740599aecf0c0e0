import logging

from django.contrib.auth import get_user_model
from django.db import models, transaction
from django.db.models import Q
from django.utils import timezone

from accounts.context import Actor

from .services.exceptions import (
    InvalidInput,
    InvalidTransition,
    InvariantViolation,
    LoadLocked,
    TransitionNotPermitted,
)
from .signals import load_status_changed, payment_status_changed, send_on_commit

User = get_user_model()

logger = logging.getLogger(__name__)


class BaseModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        abstract = True


class Load(BaseModel):
    """
    Shipment request posted by a shipper.

    Status only changes through the transition methods below, which check the
    TRANSITIONS table for both the edge and the party allowed to trigger it.
    Callers that need concurrency safety lock the row first
    (``Load.objects.select_for_update()``); the methods themselves assume
    they are looking at current data.
    """

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        POSTED = "posted", "Posted"
        BIDDING = "bidding", "Bidding"
        BOOKED = "booked", "Booked"
        IN_TRANSIT = "in_transit", "In Transit"
        DELIVERED = "delivered", "Delivered"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    class EquipmentType(models.TextChoices):
        DRY_VAN = "dry_van", "Dry Van"
        REEFER = "reefer", "Reefer"
        FLATBED = "flatbed", "Flatbed"
        STEP_DECK = "step_deck", "Step Deck"
        LOWBOY = "lowboy", "Lowboy"
        TANKER = "tanker", "Tanker"
        BOX_TRUCK = "box_truck", "Box Truck"
        POWER_ONLY = "power_only", "Power Only"

    OPEN_FOR_BIDS = (Status.POSTED, Status.BIDDING)
    PRE_BOOKING = (Status.DRAFT, Status.POSTED, Status.BIDDING)
    BOOKED_OR_LATER = (
        Status.BOOKED,
        Status.IN_TRANSIT,
        Status.DELIVERED,
        Status.COMPLETED,
    )

    # (from, to) -> parties allowed to trigger the edge.
    # "shipper" is the owning shipper, "carrier" the assigned carrier.
    # Edges only "system" may take are invisible to every other caller.
    TRANSITIONS = {
        (Status.DRAFT, Status.POSTED): ("shipper",),
        (Status.POSTED, Status.BIDDING): ("system",),
        (Status.POSTED, Status.BOOKED): ("system",),
        (Status.BIDDING, Status.BOOKED): ("system",),
        (Status.BOOKED, Status.IN_TRANSIT): ("carrier",),
        (Status.IN_TRANSIT, Status.DELIVERED): ("carrier",),
        (Status.DELIVERED, Status.COMPLETED): ("shipper", "system"),
        (Status.DRAFT, Status.CANCELLED): ("shipper",),
        (Status.POSTED, Status.CANCELLED): ("shipper",),
        (Status.BIDDING, Status.CANCELLED): ("shipper",),
        # refund outcome of a dispute
        (Status.BOOKED, Status.CANCELLED): ("system",),
        (Status.IN_TRANSIT, Status.CANCELLED): ("system",),
        (Status.DELIVERED, Status.CANCELLED): ("system",),
    }

    REQUIRED_TO_POST = (
        "origin_city",
        "origin_state",
        "destination_city",
        "destination_state",
        "pickup_date",
        "delivery_date",
        "equipment_type",
        "posted_rate",
    )

    # Parties
    shipper = models.ForeignKey(
        User, on_delete=models.PROTECT, related_name="shipped_loads"
    )
    carrier = models.ForeignKey(
        User,
        on_delete=models.PROTECT,
        related_name="hauled_loads",
        null=True,
        blank=True,
        help_text="Set when a bid is accepted",
    )

    # Route
    origin_facility_name = models.CharField(max_length=200, blank=True)
    origin_address = models.CharField(max_length=200, blank=True)
    origin_city = models.CharField(max_length=100, blank=True)
    origin_state = models.CharField(max_length=2, blank=True)
    origin_zip = models.CharField(max_length=10, blank=True)
    destination_facility_name = models.CharField(max_length=200, blank=True)
    destination_address = models.CharField(max_length=200, blank=True)
    destination_city = models.CharField(max_length=100, blank=True)
    destination_state = models.CharField(max_length=2, blank=True)
    destination_zip = models.CharField(max_length=10, blank=True)
    pickup_date = models.DateField(null=True, blank=True)
    delivery_date = models.DateField(null=True, blank=True)

    # Freight
    equipment_type = models.CharField(
        max_length=20, choices=EquipmentType.choices, blank=True
    )
    commodity = models.CharField(max_length=100, blank=True)
    weight = models.PositiveIntegerField(null=True, blank=True, help_text="lbs")
    special_requirements = models.TextField(blank=True)
    is_public = models.BooleanField(default=True)
    requires_eld = models.BooleanField(default=False)

    # Financial
    posted_rate = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True
    )
    booked_rate = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True, editable=False
    )

    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.DRAFT
    )

    # Milestones
    posted_at = models.DateTimeField(null=True, blank=True)
    booked_at = models.DateTimeField(null=True, blank=True)
    in_transit_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(
                        status__in=["draft", "posted", "bidding"],
                        carrier__isnull=True,
                    )
                    | Q(
                        status__in=["booked", "in_transit", "delivered", "completed"],
                        carrier__isnull=False,
                    )
                    | Q(status="cancelled")
                ),
                name="load_carrier_matches_status",
            ),
            models.CheckConstraint(
                condition=Q(posted_rate__isnull=True) | Q(posted_rate__gt=0),
                name="load_posted_rate_positive",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "delivered_at"], name="load_status_delivered_idx")
        ]

    def __str__(self):
        return f"Load #{self.pk} {self.origin_city} → {self.destination_city} ({self.get_status_display()})"  # type: ignore

    def delete(self, *args, **kwargs):
        if self.has_commitments():
            raise LoadLocked(
                "A load with an accepted bid or a payment cannot be deleted.",
                load_id=self.pk,
                status=self.status,
            )
        return super().delete(*args, **kwargs)

    # ========================================================================
    # STATUS WORKFLOW
    # ========================================================================

    def _transition(self, new_status, actor=None, **extra_fields):
        previous = self.status
        self.status = new_status
        for key, value in extra_fields.items():
            setattr(self, key, value)
        self.save()

        logger.info(
            "Load %s: %s -> %s by %s", self.pk, previous, new_status, actor or "system"
        )
        send_on_commit(
            load_status_changed,
            sender=Load,
            load=self,
            previous=previous,
            actor=actor,
        )

    def is_party(self, actor: Actor, party: str) -> bool:
        if party == "system":
            return actor.is_system
        if party == "shipper":
            return actor.is_shipper and actor.user_id == self.shipper_id
        if party == "carrier":
            return (
                actor.is_carrier
                and self.carrier_id is not None
                and actor.user_id == self.carrier_id
            )
        return False

    def check_transition(self, target, actor: Actor):
        """Raise InvalidTransition unless ``actor`` may move this load to ``target``."""
        parties = self.TRANSITIONS.get((self.status, target))
        if not parties or (parties == ("system",) and not actor.is_system):
            raise InvalidTransition(self.status, target, actor.role)
        if not any(self.is_party(actor, party) for party in parties):
            raise TransitionNotPermitted(
                self.status,
                target,
                actor.role,
                message=(
                    f"Only the {' or '.join(parties)} of this load can move it "
                    f"from '{self.status}' to '{target}'."
                ),
            )

    def can_transition(self, target, actor: Actor) -> bool:
        try:
            self.check_transition(target, actor)
        except InvalidTransition:
            return False
        return True

    def missing_post_fields(self):
        return [name for name in self.REQUIRED_TO_POST if not getattr(self, name)]

    def has_proof_of_delivery(self):
        return self.documents.filter(document_type=Document.DocumentType.POD).exists()

    def has_commitments(self):
        return (
            self.bids.filter(status=Bid.Status.ACCEPTED).exists()
            or Payment.objects.filter(load_id=self.pk).exists()
        )

    @property
    def is_open_for_bids(self):
        return self.status in self.OPEN_FOR_BIDS

    # ========================================================================
    # TRANSITION METHODS
    # Guard clauses -> _transition() -> side effects
    # ========================================================================

    @transaction.atomic
    def post(self, actor: Actor):
        """DRAFT -> POSTED, owning shipper, all required fields present."""
        self.check_transition(self.Status.POSTED, actor)

        missing = self.missing_post_fields()
        if missing:
            raise InvalidInput(
                "Cannot post load, required fields are missing: "
                + ", ".join(missing),
                missing_fields=missing,
            )
        if self.delivery_date < self.pickup_date:
            raise InvalidInput(
                "Delivery date cannot be before pickup date.",
                pickup_date=self.pickup_date,
                delivery_date=self.delivery_date,
            )

        self._transition(self.Status.POSTED, actor, posted_at=timezone.now())

    @transaction.atomic
    def open_bidding(self):
        """POSTED -> BIDDING on the first bid. Informational only."""
        actor = Actor.system()
        self.check_transition(self.Status.BIDDING, actor)
        self._transition(self.Status.BIDDING, actor)

    @transaction.atomic
    def book(self, bid):
        """{POSTED, BIDDING} -> BOOKED. Only reachable through bid acceptance."""
        actor = Actor.system()
        self.check_transition(self.Status.BOOKED, actor)
        self._transition(
            self.Status.BOOKED,
            actor,
            carrier_id=bid.carrier_id,
            booked_rate=bid.bid_amount,
            booked_at=timezone.now(),
        )

    @transaction.atomic
    def start_transit(self, actor: Actor):
        """BOOKED -> IN_TRANSIT, assigned carrier."""
        self.check_transition(self.Status.IN_TRANSIT, actor)
        self._transition(self.Status.IN_TRANSIT, actor, in_transit_at=timezone.now())

    @transaction.atomic
    def mark_delivered(self, actor: Actor):
        """IN_TRANSIT -> DELIVERED, assigned carrier, POD on file."""
        self.check_transition(self.Status.DELIVERED, actor)
        if not self.has_proof_of_delivery():
            raise InvalidTransition(
                self.status,
                self.Status.DELIVERED,
                actor.role,
                message="Cannot mark as delivered: Proof of Delivery document is missing.",
            )
        self._transition(self.Status.DELIVERED, actor, delivered_at=timezone.now())

    @transaction.atomic
    def complete(self, actor: Actor):
        """
        DELIVERED -> COMPLETED.

        Authorizes payment release; the caller (approve_delivery, the
        auto-release sweep, the dispute resolver) releases escrow in the same
        transaction.
        """
        self.check_transition(self.Status.COMPLETED, actor)
        self._transition(self.Status.COMPLETED, actor, completed_at=timezone.now())

    @transaction.atomic
    def cancel(self, actor: Actor, reason=""):
        """
        Pre-booking -> CANCELLED by the owning shipper.

        After booking money is committed, so the only way out is a dispute
        resolved in the shipper's favour, which cancels as ``system``.
        Open bids on the load are rejected.
        """
        self.check_transition(self.Status.CANCELLED, actor)

        now = timezone.now()
        self._transition(
            self.Status.CANCELLED,
            actor,
            cancelled_at=now,
            cancellation_reason=reason,
        )
        self.bids.filter(status__in=Bid.OPEN).update(
            status=Bid.Status.REJECTED, responded_at=now, updated_at=now
        )


class Bid(BaseModel):
    """A carrier's priced offer on a load."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACCEPTED = "accepted", "Accepted"
        REJECTED = "rejected", "Rejected"
        COUNTERED = "countered", "Countered"
        EXPIRED = "expired", "Expired"

    OPEN = (Status.PENDING, Status.COUNTERED)

    load = models.ForeignKey(Load, on_delete=models.CASCADE, related_name="bids")
    carrier = models.ForeignKey(User, on_delete=models.PROTECT, related_name="bids")
    bid_amount = models.DecimalField(max_digits=10, decimal_places=2)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.PENDING
    )
    expires_at = models.DateTimeField()
    tracking_url = models.URLField(blank=True)
    notes = models.TextField(blank=True)
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["bid_amount", "created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["load"],
                condition=Q(status="accepted"),
                name="one_accepted_bid_per_load",
            ),
            models.UniqueConstraint(
                fields=["load", "carrier"],
                condition=Q(status__in=["pending", "countered"]),
                name="one_open_bid_per_carrier",
            ),
            models.CheckConstraint(
                condition=Q(bid_amount__gt=0), name="bid_amount_positive"
            ),
        ]
        indexes = [
            models.Index(fields=["status", "expires_at"], name="bid_status_expires_idx")
        ]

    def __str__(self):
        return f"Bid #{self.pk} ${self.bid_amount} on load #{self.load_id} ({self.status})"

    def is_expired(self, now=None):
        return self.expires_at <= (now or timezone.now())


class Document(BaseModel):
    """
    Reference to a file held by the external document store.

    Only existence and approval matter here: a POD must exist before a load
    can be marked delivered, and the shipper approves it when accepting the
    delivery.
    """

    class DocumentType(models.TextChoices):
        POD = "pod", "Proof of Delivery"
        BOL = "bol", "Bill of Lading"
        RATE_CONFIRMATION = "rate_confirmation", "Rate Confirmation"
        INSURANCE = "insurance", "Insurance"
        OTHER = "other", "Other"

    load = models.ForeignKey(Load, on_delete=models.CASCADE, related_name="documents")
    document_type = models.CharField(
        max_length=20, choices=DocumentType.choices, default=DocumentType.OTHER
    )
    storage_key = models.CharField(
        max_length=255, help_text="Key of the file in the document store"
    )
    original_filename = models.CharField(max_length=255, blank=True)
    uploaded_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, related_name="uploaded_documents"
    )
    approved = models.BooleanField(default=False)
    approved_at = models.DateTimeField(null=True, blank=True)

    def save(self, *args, **kwargs):
        if self.storage_key and not self.original_filename:
            self.original_filename = self.storage_key.rsplit("/", 1)[-1]
        super().save(*args, **kwargs)

    def __str__(self):
        return f"Load #{self.load_id} - {self.get_document_type_display()} ({self.original_filename})"  # type: ignore


class Payment(BaseModel):
    """
    Escrow record for a booked load.

    ``amount`` is fixed at creation. Status moves forward only, along
    ``TRANSITIONS``; the escrow service raises the business-level conflicts
    and ``_transition`` is the last line that refuses anything else.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        HELD_IN_ESCROW = "held_in_escrow", "Held in Escrow"
        RELEASED = "released", "Released"
        COMPLETED = "completed", "Completed"
        REFUNDED = "refunded", "Refunded"
        FAILED = "failed", "Failed"
        DISPUTED = "disputed", "Disputed"

    SETTLED = (Status.RELEASED, Status.COMPLETED, Status.REFUNDED, Status.FAILED)

    TRANSITIONS = {
        Status.PENDING: (Status.HELD_IN_ESCROW,),
        Status.HELD_IN_ESCROW: (
            Status.RELEASED,
            Status.DISPUTED,
            Status.REFUNDED,
            Status.FAILED,
        ),
        Status.DISPUTED: (Status.RELEASED, Status.REFUNDED),
        Status.RELEASED: (Status.COMPLETED,),
    }

    load = models.OneToOneField(
        Load, on_delete=models.PROTECT, related_name="payment"
    )
    bid = models.OneToOneField(Bid, on_delete=models.PROTECT, related_name="payment")
    shipper = models.ForeignKey(
        User, on_delete=models.PROTECT, related_name="payments_sent"
    )
    carrier = models.ForeignKey(
        User, on_delete=models.PROTECT, related_name="payments_received"
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2, editable=False)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.PENDING
    )

    escrow_held_at = models.DateTimeField(null=True, blank=True)
    released_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    dispute_reason = models.TextField(blank=True)
    disputed_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="disputed_payments",
    )
    failure_reason = models.TextField(blank=True)
    resolution_notes = models.TextField(blank=True)

    # Payment rail references
    external_reference = models.CharField(max_length=255, blank=True, db_index=True)
    transfer_reference = models.CharField(max_length=255, blank=True)
    refund_reference = models.CharField(max_length=255, blank=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0), name="payment_amount_positive"
            ),
        ]

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_amount = dict(zip(field_names, values)).get("amount")
        return instance

    def save(self, *args, **kwargs):
        loaded = getattr(self, "_loaded_amount", None)
        if self.pk and loaded is not None and self.amount != loaded:
            logger.error(
                "Refusing to change amount of payment %s from %s to %s",
                self.pk,
                loaded,
                self.amount,
            )
            raise InvariantViolation(
                "Payment amount is immutable.",
                payment_id=self.pk,
                amount=loaded,
                attempted=self.amount,
            )
        super().save(*args, **kwargs)
        self._loaded_amount = self.amount

    def __str__(self):
        return f"Payment #{self.pk} ${self.amount} for load #{self.load_id} ({self.status})"

    @property
    def is_settled(self):
        return self.status in self.SETTLED

    def _transition(self, new_status, actor=None, **extra_fields):
        previous = self.status
        if new_status not in self.TRANSITIONS.get(previous, ()):
            logger.error(
                "Payment %s: illegal transition %s -> %s", self.pk, previous, new_status
            )
            raise InvariantViolation(
                f"Payment cannot move from '{previous}' to '{new_status}'.",
                payment_id=self.pk,
                current_state=previous,
                requested_state=new_status,
            )

        self.status = new_status
        for key, value in extra_fields.items():
            setattr(self, key, value)
        self.save()

        logger.info(
            "Payment %s: %s -> %s by %s",
            self.pk,
            previous,
            new_status,
            actor or "system",
        )
        send_on_commit(
            payment_status_changed,
            sender=Payment,
            payment=self,
            previous=previous,
        )
