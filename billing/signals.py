from django.dispatch import Signal

# sender=TeamInvite, invite=
invite_created = Signal()
# sender=TeamInvite, invite=, profile=
invite_claimed = Signal()
# sender=TeamInvite, invite=
invite_revoked = Signal()
# sender=Subscription, subscription=, user_id=
team_member_removed = Signal()
