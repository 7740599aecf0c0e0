from django.contrib import admin

from .models import Bid, Document, Load, Payment


class BidInline(admin.TabularInline):
    model = Bid
    extra = 0
    fields = ("carrier", "bid_amount", "status", "expires_at")
    readonly_fields = fields
    can_delete = False


@admin.register(Load)
class LoadAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "shipper",
        "origin_city",
        "destination_city",
        "status",
        "posted_rate",
        "booked_rate",
        "carrier",
    )
    list_filter = ("status", "equipment_type", "is_public")
    search_fields = ("origin_city", "destination_city", "shipper__email")
    # status only moves through the workflow methods
    readonly_fields = ("status", "carrier", "booked_rate")
    inlines = [BidInline]


@admin.register(Bid)
class BidAdmin(admin.ModelAdmin):
    list_display = ("id", "load", "carrier", "bid_amount", "status", "expires_at")
    list_filter = ("status",)
    readonly_fields = ("status",)


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("id", "load", "shipper", "carrier", "amount", "status")
    list_filter = ("status",)
    search_fields = ("external_reference", "transfer_reference", "refund_reference")
    readonly_fields = (
        "amount",
        "status",
        "escrow_held_at",
        "released_at",
        "completed_at",
        "refunded_at",
        "failed_at",
        "external_reference",
        "transfer_reference",
        "refund_reference",
    )


admin.site.register(Document)
