"""Status variants and their allowed transitions.

Columns store the enum ``value``. Status UPDATEs build their WHERE clause
with ``transition_guard``, so a move missing from these tables (e.g.
``paid -> pending``) cannot be written.
"""

from enum import Enum

from settlement.core.errors import InvalidTransitionError


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    VOUCHER = "voucher"
    MIXED = "mixed"


class EventStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SOLDOUT = "soldout"
    CANCELLED = "cancelled"


class VoucherStatus(str, Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TicketStatus(str, Enum):
    VALID = "valid"
    CANCELLED = "cancelled"
    USED = "used"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

EVENT_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.DRAFT: frozenset({EventStatus.ACTIVE, EventStatus.CANCELLED}),
    EventStatus.ACTIVE: frozenset({EventStatus.SOLDOUT, EventStatus.CANCELLED}),
    # compensation after an expired hold can reopen a sold-out event
    EventStatus.SOLDOUT: frozenset({EventStatus.ACTIVE, EventStatus.CANCELLED}),
    EventStatus.CANCELLED: frozenset(),
}

VOUCHER_TRANSITIONS: dict[VoucherStatus, frozenset[VoucherStatus]] = {
    VoucherStatus.ACTIVE: frozenset({VoucherStatus.REDEEMED, VoucherStatus.EXPIRED, VoucherStatus.CANCELLED}),
    VoucherStatus.REDEEMED: frozenset(),
    VoucherStatus.EXPIRED: frozenset(),
    VoucherStatus.CANCELLED: frozenset(),
}

TICKET_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.VALID: frozenset({TicketStatus.CANCELLED, TicketStatus.USED}),
    TicketStatus.CANCELLED: frozenset(),
    TicketStatus.USED: frozenset(),
}

_TABLES = {
    PaymentStatus: PAYMENT_TRANSITIONS,
    EventStatus: EVENT_TRANSITIONS,
    VoucherStatus: VOUCHER_TRANSITIONS,
    TicketStatus: TICKET_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    table = _TABLES[type(target)]
    return target in table[current]


def ensure_transition(current: str, target: Enum) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    status_cls = type(target)
    current_status = status_cls(current)
    if not can_transition(current_status, target):
        raise InvalidTransitionError(status_cls.__name__, current_status.value, target.value)


def sources_of(target: Enum) -> list[str]:
    """Stored values of every status allowed to move to ``target``."""
    table = _TABLES[type(target)]
    return [s.value for s, targets in table.items() if target in targets]


def transition_guard(column, target: Enum, *sources: Enum):
    """WHERE predicate for an UPDATE that moves ``column`` to ``target``.

    Without ``sources`` every status the table allows is matched. Named
    sources must each be allowed, otherwise InvalidTransitionError.
    """
    if not sources:
        return column.in_(sources_of(target))
    for s in sources:
        ensure_transition(s.value, target)
    return column.in_([s.value for s in sources])


def is_settled(status: str) -> bool:
    """A booking is settled once it has left ``pending``."""
    return PaymentStatus(status) != PaymentStatus.PENDING
