from django.contrib import admin

from .models import Profile, Subscription, TeamInvite


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "plan_type", "status", "seats", "seats_used")
    list_filter = ("plan_type", "status", "billing_cycle")
    readonly_fields = ("seats_used",)


@admin.register(TeamInvite)
class TeamInviteAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "subscription",
        "email",
        "seats_allocated",
        "seats_claimed",
        "status",
        "expires_at",
    )
    list_filter = ("status",)
    readonly_fields = ("invite_token", "seats_claimed", "status")


admin.site.register(Profile)
