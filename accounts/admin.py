from django.contrib import admin
from django.contrib.auth import get_user_model

from billing.models import Profile

User = get_user_model()


class TeamProfileInline(admin.StackedInline):
    model = Profile
    fk_name = "user"
    extra = 0
    # seat counts only change through the seat allocation service
    readonly_fields = ("subscription", "claimed_via_invite")
    can_delete = False


@admin.register(User)
class MarketplaceUserAdmin(admin.ModelAdmin):
    list_display = ("username", "email", "role", "company_name", "mc_number", "is_active")
    list_filter = ("role", "is_active")
    search_fields = ("username", "email", "company_name", "mc_number", "dot_number")
    ordering = ("-date_joined",)
    readonly_fields = ("last_login", "date_joined", "created_at", "updated_at")
    fieldsets = (
        (None, {"fields": ("username", "email", "role", "is_active")}),
        ("Company", {"fields": ("first_name", "last_name", "company_name", "phone")}),
        ("Carrier authority", {"fields": ("mc_number", "dot_number")}),
        ("Access", {"fields": ("is_staff", "is_superuser", "groups")}),
        ("History", {"fields": ("last_login", "date_joined", "created_at", "updated_at")}),
    )
    inlines = [TeamProfileInline]
