"""Status values and transition tables for quotes, requests, invoices and bookings."""

from __future__ import annotations

from enum import Enum

from .errors import InvalidStateError, InvalidTransitionError


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    CONVERTED = "converted"
    EXPIRED = "expired"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class CartStatus(str, Enum):
    ACTIVE = "active"
    ABANDONED = "abandoned"
    CONVERTED = "converted"


class InvoiceStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    VOID = "void"
    REFUNDED = "refunded"
    PARTIAL = "partial"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    SCHEDULED = "scheduled"
    DROPPED = "dropped"
    PICKED_UP = "picked_up"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DumpsterStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    DROPPED = "dropped"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


class AdjustmentKind(str, Enum):
    TONNAGE_OVERAGE = "tonnage_overage"
    LATE_FEE = "late_fee"
    OTHER = "other"


class BookingEffect(str, Enum):
    """Side effects applied when a booking enters a new status."""

    STAMP_DROPPED_AT = "stamp_dropped_at"
    STAMP_PICKED_UP_AT = "stamp_picked_up_at"
    MARK_DUMPSTER_DROPPED = "mark_dumpster_dropped"
    RELEASE_DUMPSTER = "release_dumpster"


B = BookingStatus

# (current, target) -> effects. Pairs missing from the table are not allowed.
BOOKING_TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], tuple[BookingEffect, ...]] = {
    (B.CONFIRMED, B.SCHEDULED): (),
    (B.CONFIRMED, B.CANCELLED): (BookingEffect.RELEASE_DUMPSTER,),
    (B.SCHEDULED, B.DROPPED): (
        BookingEffect.STAMP_DROPPED_AT,
        BookingEffect.MARK_DUMPSTER_DROPPED,
    ),
    (B.SCHEDULED, B.CANCELLED): (BookingEffect.RELEASE_DUMPSTER,),
    (B.DROPPED, B.PICKED_UP): (BookingEffect.STAMP_PICKED_UP_AT,),
    (B.PICKED_UP, B.COMPLETED): (BookingEffect.RELEASE_DUMPSTER,),
}

TERMINAL_BOOKING_STATUSES = frozenset({B.COMPLETED, B.CANCELLED})

# Dumpster statuses that mean "held by a booking".
HELD_DUMPSTER_STATUSES = frozenset({DumpsterStatus.RESERVED, DumpsterStatus.DROPPED})

REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.DECLINED}),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.DECLINED: frozenset(),
}


def _coerce(enum_cls: type[Enum], value: str | Enum, error_cls: type[Exception]) -> Enum:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise error_cls(f"Unknown {enum_cls.__name__}: {value!r}") from exc


def allowed_booking_targets(current: str | BookingStatus) -> list[BookingStatus]:
    """Statuses a booking in ``current`` may move to, in table order."""

    current = _coerce(BookingStatus, current, InvalidTransitionError)
    return [target for (source, target) in BOOKING_TRANSITIONS if source is current]


def booking_transition_effects(
    current: str | BookingStatus, target: str | BookingStatus
) -> tuple[BookingEffect, ...]:
    """Return the effects of moving a booking from ``current`` to ``target``.

    Raises :class:`InvalidTransitionError` when the pair is not an allowed
    edge, including a transition from a status to itself.
    """

    current = _coerce(BookingStatus, current, InvalidTransitionError)
    target = _coerce(BookingStatus, target, InvalidTransitionError)
    try:
        return BOOKING_TRANSITIONS[(current, target)]
    except KeyError:
        raise InvalidTransitionError(
            f"Cannot transition from {current.value} to {target.value}"
        ) from None


def is_terminal_booking(status: str | BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_BOOKING_STATUSES


def check_request_transition(current: str | RequestStatus, target: RequestStatus) -> None:
    current = _coerce(RequestStatus, current, InvalidStateError)
    if target not in REQUEST_TRANSITIONS[current]:
        verb = "approve" if target is RequestStatus.APPROVED else "decline"
        raise InvalidStateError(f"Cannot {verb} a request with status: {current.value}")
