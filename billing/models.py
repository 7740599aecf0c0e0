import secrets

from django.contrib.auth import get_user_model
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from marketplace.models import BaseModel

User = get_user_model()


class Subscription(BaseModel):
    """
    Billing entity owned by one user, with a fixed number of seats.

    ``seats_used`` counts profiles attached to the subscription, the owner
    included. The database refuses anything outside ``0 <= seats_used <= seats``.
    """

    class PlanType(models.TextChoices):
        SHIPPER = "shipper", "Shipper"
        CARRIER = "carrier", "Carrier"

    class BillingCycle(models.TextChoices):
        MONTHLY = "monthly", "Monthly"
        ANNUAL = "annual", "Annual"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        TRIALING = "trialing", "Trialing"
        PAST_DUE = "past_due", "Past Due"
        CANCELLED = "cancelled", "Cancelled"

    USABLE = (Status.ACTIVE, Status.TRIALING)

    user = models.ForeignKey(
        User, on_delete=models.PROTECT, related_name="owned_subscriptions"
    )
    plan_type = models.CharField(max_length=20, choices=PlanType.choices)
    billing_cycle = models.CharField(
        max_length=10, choices=BillingCycle.choices, default=BillingCycle.MONTHLY
    )
    seats = models.PositiveIntegerField(default=1)
    seats_used = models.PositiveIntegerField(default=0)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.TRIALING
    )
    current_period_end = models.DateTimeField(null=True, blank=True)
    external_reference = models.CharField(max_length=255, blank=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(seats_used__lte=F("seats")),
                name="subscription_seats_used_within_seats",
            ),
            models.CheckConstraint(
                condition=Q(seats__gte=1), name="subscription_has_seats"
            ),
        ]

    def __str__(self):
        return f"{self.user} - {self.get_plan_type_display()} ({self.seats_used}/{self.seats} seats)"  # type: ignore

    @property
    def is_usable(self):
        return self.status in self.USABLE


class TeamInviteQuerySet(models.QuerySet):
    def reserving(self, now=None):
        """Invites whose unclaimed seats are still held back from the pool."""
        return self.filter(
            status=TeamInvite.Status.PENDING, expires_at__gt=now or timezone.now()
        )


def generate_invite_token():
    return secrets.token_urlsafe(32)


class TeamInvite(BaseModel):
    """Token-bearing grant of ``seats_allocated`` seats on a subscription."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        CLAIMED = "claimed", "Claimed"
        EXPIRED = "expired", "Expired"
        REVOKED = "revoked", "Revoked"

    subscription = models.ForeignKey(
        Subscription, on_delete=models.CASCADE, related_name="invites"
    )
    created_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, related_name="sent_invites"
    )
    invite_token = models.CharField(
        max_length=64, unique=True, default=generate_invite_token, editable=False
    )
    email = models.EmailField(blank=True)
    seats_allocated = models.PositiveIntegerField(default=1)
    seats_claimed = models.PositiveIntegerField(default=0)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.PENDING
    )
    expires_at = models.DateTimeField()
    claimed_at = models.DateTimeField(null=True, blank=True)

    objects = TeamInviteQuerySet.as_manager()

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(seats_claimed__lte=F("seats_allocated")),
                name="invite_claimed_within_allocation",
            ),
            models.CheckConstraint(
                condition=Q(seats_allocated__gte=1), name="invite_allocates_seats"
            ),
        ]
        indexes = [
            models.Index(fields=["status", "expires_at"], name="invite_status_expires_idx")
        ]

    def __str__(self):
        return f"Invite #{self.pk} {self.seats_claimed}/{self.seats_allocated} ({self.status})"

    @property
    def seats_remaining(self):
        return self.seats_allocated - self.seats_claimed

    def is_expired(self, now=None):
        return self.expires_at <= (now or timezone.now())


class Profile(BaseModel):
    """A user's team membership, optionally traced to the invite that brought them in."""

    user = models.OneToOneField(
        User, on_delete=models.CASCADE, related_name="team_profile"
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="members",
    )
    claimed_via_invite = models.ForeignKey(
        TeamInvite,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="profiles",
    )

    def __str__(self):
        return f"{self.user} @ {self.subscription_id or '-'}"
