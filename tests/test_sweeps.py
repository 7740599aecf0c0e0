from datetime import timedelta
from io import StringIO

import pytest
from django.core.management import call_command
from django.utils import timezone

from accounts.context import Actor
from billing.models import TeamInvite
from marketplace.models import Load, Payment
from marketplace.services import escrow

pytestmark = pytest.mark.django_db


def age_delivery(payment, days):
    Load.objects.filter(pk=payment.load_id).update(
        delivered_at=timezone.now() - timedelta(days=days)
    )


def test_auto_release_after_window(delivered_payment, settings, local_rail):
    settings.PAYMENT_AUTO_RELEASE_DAYS = 7
    age_delivery(delivered_payment, 8)

    summary = escrow.auto_release_payments()

    assert summary == {"released": 1, "skipped": 0, "failed": 0}
    delivered_payment.refresh_from_db()
    delivered_payment.load.refresh_from_db()
    assert delivered_payment.status == Payment.Status.RELEASED
    assert delivered_payment.resolution_notes == "Auto-released after delivery"
    assert delivered_payment.load.status == Load.Status.COMPLETED
    assert [c["operation"] for c in local_rail] == ["release"]


def test_auto_release_waits_for_window(delivered_payment, settings):
    settings.PAYMENT_AUTO_RELEASE_DAYS = 7
    age_delivery(delivered_payment, 3)

    assert escrow.auto_release_payments() == {"released": 0, "skipped": 0, "failed": 0}
    delivered_payment.refresh_from_db()
    assert delivered_payment.status == Payment.Status.HELD_IN_ESCROW


def test_auto_release_skips_disputed(delivered_payment, settings):
    settings.PAYMENT_AUTO_RELEASE_DAYS = 7
    age_delivery(delivered_payment, 30)
    escrow.flag_dispute(
        Actor.for_user(delivered_payment.shipper), delivered_payment.pk, "Missing cases"
    )

    assert escrow.auto_release_payments()["released"] == 0
    delivered_payment.refresh_from_db()
    assert delivered_payment.status == Payment.Status.DISPUTED


def test_auto_release_is_repeatable(delivered_payment, local_rail):
    age_delivery(delivered_payment, 30)
    escrow.auto_release_payments()
    assert escrow.auto_release_payments()["released"] == 0
    assert len(local_rail) == 1


def test_auto_release_counts_rail_failures(delivered_payment, settings):
    settings.PAYMENT_RAIL_BACKEND = "tests.test_escrow.BrokenRail"
    age_delivery(delivered_payment, 30)

    assert escrow.auto_release_payments()["failed"] == 1
    delivered_payment.refresh_from_db()
    delivered_payment.load.refresh_from_db()
    assert delivered_payment.status == Payment.Status.HELD_IN_ESCROW
    assert delivered_payment.load.status == Load.Status.DELIVERED


def test_auto_release_command(delivered_payment):
    age_delivery(delivered_payment, 30)
    out = StringIO()
    call_command("auto_release_payments", stdout=out)
    assert "1 released, 0 skipped, 0 failed" in out.getvalue()


def test_expire_invites_command(team_invite_factory):
    invite = team_invite_factory(expires_at=timezone.now() - timedelta(days=1))
    out = StringIO()
    call_command("expire_invites", stdout=out)
    assert "Expired 1 invites." in out.getvalue()
    invite.refresh_from_db()
    assert invite.status == TeamInvite.Status.EXPIRED
