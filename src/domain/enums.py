"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the lifecycle; terminal statuses rank last."""
        return _STATUS_RANK[self]

    def is_behind(self, other: "BookingStatus") -> bool:
        return self.rank < other.rank


class BookingEvent(str, enum.Enum):
    ACCEPT = "accept"
    CANCEL = "cancel"
    START_EN_ROUTE = "start_en_route"
    ARRIVE = "arrive"
    START_TRIP = "start_trip"
    COMPLETE = "complete"


class Role(str, enum.Enum):
    REQUESTER = "requester"
    DRIVER = "driver"


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    LOST_RACE = "lost_race"


class ChangeType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

_STATUS_RANK = {
    BookingStatus.PENDING: 0,
    BookingStatus.ACCEPTED: 1,
    BookingStatus.EN_ROUTE: 2,
    BookingStatus.ARRIVED: 3,
    BookingStatus.IN_PROGRESS: 4,
    BookingStatus.COMPLETED: 5,
    BookingStatus.CANCELLED: 5,
}

# Statuses in which a driver must be assigned.
ASSIGNED_STATUSES = frozenset(
    {
        BookingStatus.ACCEPTED,
        BookingStatus.EN_ROUTE,
        BookingStatus.ARRIVED,
        BookingStatus.IN_PROGRESS,
    }
)

# Statuses in which the driver's position is reconciled against the pickup.
PICKUP_LEG_STATUSES = frozenset(
    {BookingStatus.ACCEPTED, BookingStatus.EN_ROUTE, BookingStatus.ARRIVED}
)


# State machine: maps (current status, event) -> next status
BOOKING_TRANSITIONS: dict[tuple[BookingStatus, BookingEvent], BookingStatus] = {
    (BookingStatus.PENDING, BookingEvent.ACCEPT): BookingStatus.ACCEPTED,
    (BookingStatus.PENDING, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.ACCEPTED, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.EN_ROUTE, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.ARRIVED, BookingEvent.CANCEL): BookingStatus.CANCELLED,
    (BookingStatus.ACCEPTED, BookingEvent.START_EN_ROUTE): BookingStatus.EN_ROUTE,
    (BookingStatus.EN_ROUTE, BookingEvent.ARRIVE): BookingStatus.ARRIVED,
    (BookingStatus.EN_ROUTE, BookingEvent.START_TRIP): BookingStatus.IN_PROGRESS,
    (BookingStatus.ARRIVED, BookingEvent.START_TRIP): BookingStatus.IN_PROGRESS,
    (BookingStatus.IN_PROGRESS, BookingEvent.COMPLETE): BookingStatus.COMPLETED,
}

# Requesters may only cancel before the ambulance is on its way.
REQUESTER_CANCELLABLE = frozenset({BookingStatus.PENDING, BookingStatus.ACCEPTED})


class PositionSource(str, enum.Enum):
    SNAPSHOT = "snapshot"  # durable last-known row
    LIVE = "live"  # message-channel sample
