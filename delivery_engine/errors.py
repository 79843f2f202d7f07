"""Error taxonomy for the delivery engine."""

from typing import Any


class DeliveryEngineError(Exception):
    """Base class for all engine errors surfaced to callers."""

    status_code: int = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(DeliveryEngineError):
    """A referenced rider, delivery, order or user does not exist."""

    status_code = 404


class InvalidTransition(DeliveryEngineError):
    """A status change is not legal from the current state."""

    status_code = 409


class PermissionDenied(InvalidTransition):
    """The requester is not allowed to perform the transition or action."""

    status_code = 403


class ExpiredWindow(DeliveryEngineError):
    """A rider response arrived after the acceptance window closed."""

    status_code = 409


class PreconditionFailed(DeliveryEngineError):
    """An operation's preconditions do not hold."""

    status_code = 400


class ConcurrentUpdate(DeliveryEngineError):
    """Optimistic transaction retries were exhausted."""

    status_code = 409


class ReconciliationGap(DeliveryEngineError):
    """A paired rider/delivery write may have partially applied."""

    status_code = 500
