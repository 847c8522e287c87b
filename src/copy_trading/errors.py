"""Error taxonomy for the fan-out pipeline.

Every error carries a stable ``kind`` code (the class name). The code is what
gets persisted as a position's ``failure_reason`` and what callers match on.
"""

from __future__ import annotations


class CopyTradeError(Exception):
    """Base error for the copy-trade pipeline."""

    kind: str = "CopyTradeError"

    def __init_subclass__(cls, **kwargs: object) -> None:
        super().__init_subclass__(**kwargs)
        cls.kind = cls.__name__

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


# ==================== input / validation ====================


class ValidationFailure(CopyTradeError):
    """Rejected synchronously; never retried automatically."""


class InvalidOperator(ValidationFailure):
    """Operator is unknown or inactive."""


class InvalidParameters(ValidationFailure):
    """Payload does not match the schema for its trade kind or settings range."""


class DuplicateSubscription(ValidationFailure):
    """An active subscription already exists for the (follower, operator) pair."""


# ==================== state conflicts ====================


class StateConflict(CopyTradeError):
    """Operation not applicable to current ledger state; re-read before retrying."""


class InvalidTransition(StateConflict):
    """Requested status transition is not allowed by the state machine."""


class TradeNotPending(StateConflict):
    """Trade is no longer in a dispatchable state."""


class HasOpenPositions(StateConflict):
    """Follower still holds pending or active positions against the operator."""


class NotFound(StateConflict):
    """Referenced record does not exist."""


class TradeNotFound(NotFound):
    pass


class PositionNotFound(NotFound):
    pass


class SubscriptionNotFound(NotFound):
    pass


class KeyNotFound(NotFound):
    """No custodial key stored for the user."""


# ==================== venue execution ====================


class VenueError(CopyTradeError):
    """Per-follower execution failure; recorded on the position, never re-raised."""


class VenueTimeout(VenueError):
    pass


class InsufficientLiquidity(VenueError):
    pass


class VenueRejected(VenueError):
    pass


class VenueUnavailable(VenueError):
    pass


class ZeroAllocation(VenueError):
    """Computed allocation is zero; the venue is never called."""


# ==================== infrastructure ====================


class InfrastructureError(CopyTradeError):
    """Backing store unreachable; the affected follower stays pending."""


class LedgerUnavailable(InfrastructureError):
    pass


class CustodianUnavailable(InfrastructureError):
    pass
