"""
Error taxonomy for the transaction engine.

Every failure a caller can observe is a ``ServiceError``. The ``kind``
attribute tells the caller what to do with it:

- ``validation``: malformed input, nothing was written.
- ``authorization``: the actor lacks the role or ownership required.
- ``not_found``: the target row does not exist.
- ``conflict``: an expected business outcome ("someone else already booked
  this load"). Safe to show to the user, pointless to retry as-is.
- ``external``: the payment rail failed after bounded retries. The
  triggering operation left every row in its prior state, so a retry is safe.
- ``invariant``: should be unreachable with correct locking. Logged and
  surfaced, never corrected.
"""


class ServiceError(Exception):
    kind = "error"
    default_message = "The operation could not be completed."

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def code(self):
        return type(self).__name__

    def as_dict(self):
        return {
            "error": self.kind,
            "code": self.code,
            "message": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


def _jsonable(value):
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


# ---------------------------------------------------------------------------
# Validation / authorization / lookup
# ---------------------------------------------------------------------------


class InvalidInput(ServiceError):
    kind = "validation"
    default_message = "Invalid input."


class AuthorizationError(ServiceError):
    kind = "authorization"
    default_message = "You are not allowed to perform this action."


class NotOwner(AuthorizationError):
    default_message = "Only the owner can perform this action."


class NotPermitted(AuthorizationError):
    default_message = "Your role does not permit this action."


class NotFound(ServiceError):
    kind = "not_found"
    default_message = "Not found."


class LoadNotFound(NotFound):
    default_message = "Load not found."


class BidNotFound(NotFound):
    default_message = "Bid not found on this load."


class PaymentNotFound(NotFound):
    default_message = "Payment not found."


class SubscriptionNotFound(NotFound):
    default_message = "Subscription not found."


class InviteNotFound(NotFound):
    default_message = "Invite not found."


class MemberNotFound(NotFound):
    default_message = "Team member not found."


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictError(ServiceError):
    kind = "conflict"
    default_message = "The resource is not in a state that permits this action."


class InvalidTransition(ConflictError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current, requested, role, message=None):
        message = message or (
            f"Cannot move from '{current}' to '{requested}' as {role}."
        )
        super().__init__(
            message, current_state=current, requested_state=requested, actor_role=role
        )


class TransitionNotPermitted(InvalidTransition, AuthorizationError):
    """Transition exists but this actor may not trigger it."""

    kind = "authorization"


class LoadNotBiddable(ConflictError):
    default_message = "This load is not open for bidding."


class LoadAlreadyBooked(LoadNotBiddable):
    default_message = "This load has already been booked."


class LoadLocked(ConflictError):
    default_message = "This load can no longer be changed."


class DuplicateBid(ConflictError):
    default_message = "You already have an open bid on this load."


class BidNotPending(ConflictError):
    default_message = "This bid is no longer pending."


class BidExpired(BidNotPending):
    default_message = "This bid has expired."


class AlreadyEscrowed(ConflictError):
    default_message = "Escrow is already open for this payment."


class NotEscrowed(ConflictError):
    default_message = "Payment is not held in escrow."


class AlreadySettled(ConflictError):
    default_message = "Payment has already been settled."


class AlreadyDisputed(ConflictError):
    default_message = "Payment is already disputed."


class PaymentFrozen(ConflictError):
    default_message = "Payment is disputed and awaits admin resolution."


class NotDisputed(ConflictError):
    default_message = "Payment is not disputed."


class SubscriptionInactive(ConflictError):
    default_message = "The subscription is not active."


class InsufficientSeats(ConflictError):
    default_message = "Not enough seats available."


class InviteExpired(ConflictError):
    default_message = "Invite has expired."


class InviteRevoked(ConflictError):
    default_message = "Invite has been revoked."


class InviteExhausted(ConflictError):
    default_message = "No seats left on this invite."


class AlreadyTeamMember(ConflictError):
    default_message = "You already belong to a subscription."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class ExternalDependencyFailure(ServiceError):
    kind = "external"
    default_message = "The payment processor is unavailable. Please try again."


class InvariantViolation(ServiceError):
    kind = "invariant"
    default_message = "Internal consistency error."
