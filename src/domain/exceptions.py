"""Dispatch error taxonomy."""


class DispatchError(Exception):
    """Base class for all dispatch errors."""


class InvalidStateTransition(DispatchError):
    """Raised when a booking status change violates the state machine."""


class ActorNotPermitted(DispatchError):
    """The caller is not allowed to fire this event on this booking."""


class BookingNotFound(DispatchError):
    pass


class DriverUnavailable(DispatchError):
    """Accept attempted by a driver flagged ``available=false``."""


class ActiveTripExists(DispatchError):
    """Accept attempted by a driver who already holds a non-terminal booking."""


class StoreUnavailable(DispatchError):
    """Transient storage / broker failure.  Retryable by the user, never automatically."""


class RoutingError(DispatchError):
    """The routing service failed or returned no usable route."""
