from django.urls import path

from . import views

urlpatterns = [
    path(
        "subscriptions/<int:subscription_id>/",
        views.subscription_detail,
        name="subscription_detail",
    ),
    path(
        "subscriptions/<int:subscription_id>/invites/",
        views.create_invite,
        name="create_invite",
    ),
    path(
        "subscriptions/<int:subscription_id>/seats/",
        views.change_seat_count,
        name="change_seat_count",
    ),
    path("invites/claim/", views.claim_invite, name="claim_invite"),
    path("invites/<int:invite_id>/revoke/", views.revoke_invite, name="revoke_invite"),
    path(
        "team/members/<int:user_id>/remove/",
        views.remove_team_member,
        name="remove_team_member",
    ),
]
