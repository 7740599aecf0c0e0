import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Load",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("is_active", models.BooleanField(default=True)),
                ("origin_facility_name", models.CharField(blank=True, max_length=200)),
                ("origin_address", models.CharField(blank=True, max_length=200)),
                ("origin_city", models.CharField(blank=True, max_length=100)),
                ("origin_state", models.CharField(blank=True, max_length=2)),
                ("origin_zip", models.CharField(blank=True, max_length=10)),
                ("destination_facility_name", models.CharField(blank=True, max_length=200)),
                ("destination_address", models.CharField(blank=True, max_length=200)),
                ("destination_city", models.CharField(blank=True, max_length=100)),
                ("destination_state", models.CharField(blank=True, max_length=2)),
                ("destination_zip", models.CharField(blank=True, max_length=10)),
                ("pickup_date", models.DateField(blank=True, null=True)),
                ("delivery_date", models.DateField(blank=True, null=True)),
                (
                    "equipment_type",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("dry_van", "Dry Van"),
                            ("reefer", "Reefer"),
                            ("flatbed", "Flatbed"),
                            ("step_deck", "Step Deck"),
                            ("lowboy", "Lowboy"),
                            ("tanker", "Tanker"),
                            ("box_truck", "Box Truck"),
                            ("power_only", "Power Only"),
                        ],
                        max_length=20,
                    ),
                ),
                ("commodity", models.CharField(blank=True, max_length=100)),
                ("weight", models.PositiveIntegerField(blank=True, help_text="lbs", null=True)),
                ("special_requirements", models.TextField(blank=True)),
                ("is_public", models.BooleanField(default=True)),
                ("requires_eld", models.BooleanField(default=False)),
                ("posted_rate", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("booked_rate", models.DecimalField(blank=True, decimal_places=2, editable=False, max_digits=10, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("posted", "Posted"),
                            ("bidding", "Bidding"),
                            ("booked", "Booked"),
                            ("in_transit", "In Transit"),
                            ("delivered", "Delivered"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="draft",
                        max_length=20,
                    ),
                ),
                ("posted_at", models.DateTimeField(blank=True, null=True)),
                ("booked_at", models.DateTimeField(blank=True, null=True)),
                ("in_transit_at", models.DateTimeField(blank=True, null=True)),
                ("delivered_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True)),
                (
                    "carrier",
                    models.ForeignKey(
                        blank=True,
                        help_text="Set when a bid is accepted",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="hauled_loads",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "shipper",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="shipped_loads",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status", "delivered_at"], name="load_status_delivered_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("carrier__isnull", True), ("status__in", ["draft", "posted", "bidding"])),
                            models.Q(
                                ("carrier__isnull", False),
                                ("status__in", ["booked", "in_transit", "delivered", "completed"]),
                            ),
                            ("status", "cancelled"),
                            _connector="OR",
                        ),
                        name="load_carrier_matches_status",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("posted_rate__isnull", True), ("posted_rate__gt", 0), _connector="OR"),
                        name="load_posted_rate_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Bid",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("is_active", models.BooleanField(default=True)),
                ("bid_amount", models.DecimalField(decimal_places=2, max_digits=10)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("accepted", "Accepted"),
                            ("rejected", "Rejected"),
                            ("countered", "Countered"),
                            ("expired", "Expired"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("expires_at", models.DateTimeField()),
                ("tracking_url", models.URLField(blank=True)),
                ("notes", models.TextField(blank=True)),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "carrier",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="bids",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "load",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="bids",
                        to="marketplace.load",
                    ),
                ),
            ],
            options={
                "ordering": ["bid_amount", "created_at"],
                "indexes": [models.Index(fields=["status", "expires_at"], name="bid_status_expires_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "accepted")),
                        fields=("load",),
                        name="one_accepted_bid_per_load",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["pending", "countered"])),
                        fields=("load", "carrier"),
                        name="one_open_bid_per_carrier",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("bid_amount__gt", 0)),
                        name="bid_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Document",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "document_type",
                    models.CharField(
                        choices=[
                            ("pod", "Proof of Delivery"),
                            ("bol", "Bill of Lading"),
                            ("rate_confirmation", "Rate Confirmation"),
                            ("insurance", "Insurance"),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=20,
                    ),
                ),
                ("storage_key", models.CharField(help_text="Key of the file in the document store", max_length=255)),
                ("original_filename", models.CharField(blank=True, max_length=255)),
                ("approved", models.BooleanField(default=False)),
                ("approved_at", models.DateTimeField(blank=True, null=True)),
                (
                    "load",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="documents",
                        to="marketplace.load",
                    ),
                ),
                (
                    "uploaded_by",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="uploaded_documents",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("is_active", models.BooleanField(default=True)),
                ("amount", models.DecimalField(decimal_places=2, editable=False, max_digits=10)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("held_in_escrow", "Held in Escrow"),
                            ("released", "Released"),
                            ("completed", "Completed"),
                            ("refunded", "Refunded"),
                            ("failed", "Failed"),
                            ("disputed", "Disputed"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("escrow_held_at", models.DateTimeField(blank=True, null=True)),
                ("released_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("refunded_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("dispute_reason", models.TextField(blank=True)),
                ("failure_reason", models.TextField(blank=True)),
                ("resolution_notes", models.TextField(blank=True)),
                ("external_reference", models.CharField(blank=True, db_index=True, max_length=255)),
                ("transfer_reference", models.CharField(blank=True, max_length=255)),
                ("refund_reference", models.CharField(blank=True, max_length=255)),
                (
                    "bid",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment",
                        to="marketplace.bid",
                    ),
                ),
                (
                    "carrier",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments_received",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "disputed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="disputed_payments",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "load",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment",
                        to="marketplace.load",
                    ),
                ),
                (
                    "shipper",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payments_sent",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="payment_amount_positive",
                    ),
                ],
            },
        ),
    ]
