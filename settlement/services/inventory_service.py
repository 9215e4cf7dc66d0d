"""Ticket inventory for events.

``available_tickets`` is only changed through guarded UPDATEs, so two
requests for the last ticket cannot both win.
"""

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from settlement.core.errors import InsufficientInventoryError, ValidationError
from settlement.db.conditional import execute_conditional
from settlement.domain.states import EventStatus, transition_guard
from settlement.models.event import Event

logger = structlog.get_logger(__name__)


def reserve_tickets(db: Session, event_id: str, quantity: int) -> None:
    """Compare-and-decrement ``available_tickets`` by ``quantity``.

    Raises:
        InsufficientInventoryError: fewer tickets left (or the event left
            ``active``) by the time the update ran.
    """
    if quantity < 1:
        raise ValidationError("quantity must be >= 1")
    stmt = (
        update(Event)
        .where(
            Event.id == event_id,
            Event.status == EventStatus.ACTIVE.value,
            Event.available_tickets >= quantity,
        )
        .values(available_tickets=Event.available_tickets - quantity)
    )
    if not execute_conditional(db, stmt, Event, event_id):
        logger.info("inventory_reservation_lost", event_id=event_id, quantity=quantity)
        raise InsufficientInventoryError(quantity)


def release_tickets(db: Session, event_id: str, quantity: int) -> int:
    """Give ``quantity`` tickets back, never above capacity. Returns tickets released."""
    stmt = (
        update(Event)
        .where(Event.id == event_id, Event.available_tickets + quantity <= Event.capacity)
        .values(available_tickets=Event.available_tickets + quantity)
    )
    if execute_conditional(db, stmt, Event, event_id):
        reopen_if_available(db, event_id)
        return quantity

    # counter already near capacity (e.g. edited by an admin); clamp instead of overflowing
    event = db.get(Event, event_id)
    if not event:
        return 0
    released = max(event.capacity - event.available_tickets, 0)
    logger.warning("inventory_release_clamped", event_id=event_id, requested=quantity, released=released)
    if released:
        clamp = (
            update(Event)
            .where(Event.id == event_id, Event.available_tickets == event.available_tickets)
            .values(available_tickets=Event.capacity)
        )
        if not execute_conditional(db, clamp, Event, event_id):
            return 0
        reopen_if_available(db, event_id)
    return released


def mark_soldout_if_exhausted(db: Session, event_id: str) -> bool:
    stmt = (
        update(Event)
        .where(
            Event.id == event_id,
            transition_guard(Event.status, EventStatus.SOLDOUT),
            Event.available_tickets <= 0,
        )
        .values(status=EventStatus.SOLDOUT.value)
    )
    flipped = execute_conditional(db, stmt, Event, event_id)
    if flipped:
        logger.info("event_sold_out", event_id=event_id)
    return flipped


def reopen_if_available(db: Session, event_id: str) -> bool:
    stmt = (
        update(Event)
        .where(
            Event.id == event_id,
            transition_guard(Event.status, EventStatus.ACTIVE, EventStatus.SOLDOUT),
            Event.available_tickets > 0,
        )
        .values(status=EventStatus.ACTIVE.value)
    )
    reopened = execute_conditional(db, stmt, Event, event_id)
    if reopened:
        logger.info("event_reopened", event_id=event_id)
    return reopened
