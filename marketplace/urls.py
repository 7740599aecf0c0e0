"""
URL routing for the marketplace operations.

- /loads/ → create a load
- /loads/<id>/ → load detail with available actions
- /loads/<id>/<action>/ → lifecycle operations
- /loads/<id>/bids/... → bid engine
- /payments/<id>/<action>/ → escrow operations
- /payments/webhook/ → payment rail notifications
"""

from django.urls import path

from . import views

urlpatterns = [
    path("loads/", views.create_load, name="create_load"),
    path("loads/<int:load_id>/", views.load_detail, name="load_detail"),
    path("loads/<int:load_id>/update/", views.update_load, name="update_load"),
    path("loads/<int:load_id>/post/", views.post_load, name="post_load"),
    path("loads/<int:load_id>/cancel/", views.cancel_load, name="cancel_load"),
    path("loads/<int:load_id>/delete/", views.delete_load, name="delete_load"),
    path("loads/<int:load_id>/status/", views.change_status, name="change_status"),
    path(
        "loads/<int:load_id>/approve-delivery/",
        views.approve_delivery,
        name="approve_delivery",
    ),
    path(
        "loads/<int:load_id>/documents/",
        views.attach_document,
        name="attach_document",
    ),
    path(
        "loads/<int:load_id>/resolve-dispute/",
        views.resolve_dispute,
        name="resolve_dispute",
    ),
    path("loads/<int:load_id>/bids/", views.submit_bid, name="submit_bid"),
    path(
        "loads/<int:load_id>/bids/<int:bid_id>/accept/",
        views.accept_bid,
        name="accept_bid",
    ),
    path(
        "loads/<int:load_id>/bids/<int:bid_id>/reject/",
        views.reject_bid,
        name="reject_bid",
    ),
    path("payments/webhook/", views.payment_webhook, name="payment_webhook"),
    path("payments/<int:payment_id>/fund/", views.fund_escrow, name="fund_escrow"),
    path(
        "payments/<int:payment_id>/release/",
        views.release_payment,
        name="release_payment",
    ),
    path(
        "payments/<int:payment_id>/refund/",
        views.refund_payment,
        name="refund_payment",
    ),
    path(
        "payments/<int:payment_id>/dispute/",
        views.dispute_payment,
        name="dispute_payment",
    ),
]
