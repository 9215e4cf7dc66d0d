"""Booking terminal transitions shared by checkout, webhooks and the hold sweep.

Each transition is a compare-and-set on ``payment_status``: only the caller
whose UPDATE matched the ``pending`` row applies the side effects, so
duplicate or concurrent deliveries settle a booking once.
"""

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from settlement.core.clock import utcnow
from settlement.db.conditional import execute_conditional
from settlement.domain.states import PaymentStatus, TicketStatus, transition_guard
from settlement.models.booking import Booking
from settlement.models.ticket import Ticket
from settlement.services.audit_service import log_audit
from settlement.services.customer_service import record_paid_booking
from settlement.services.inventory_service import mark_soldout_if_exhausted, release_tickets

logger = structlog.get_logger(__name__)


def _compare_and_set_status(db: Session, booking: Booking, target: PaymentStatus, **values) -> bool:
    current = PaymentStatus(booking.payment_status)
    stmt = (
        update(Booking)
        .where(Booking.id == booking.id, transition_guard(Booking.payment_status, target, current))
        .values(payment_status=target.value, **values)
    )
    return execute_conditional(db, stmt, Booking, booking.id)


def mark_booking_paid(db: Session, booking: Booking, *, stripe_amount: int, actor: str) -> bool:
    """pending -> paid, then customer rollups and the sold-out check.

    Returns False when another writer settled the booking first.

    Raises:
        InvalidTransitionError: booking is not pending (e.g. already failed).
    """
    booking_id, event_id = booking.id, booking.event_id
    customer_id, total = booking.customer_id, booking.total_amount
    if not _compare_and_set_status(db, booking, PaymentStatus.PAID, stripe_amount=stripe_amount, paid_at=utcnow()):
        return False

    record_paid_booking(db, customer_id, total)
    mark_soldout_if_exhausted(db, event_id)
    log_audit(db, actor=actor, action="booking.paid", entity_type="booking", entity_id=booking_id,
              details={"stripe_amount": stripe_amount, "total": total})
    logger.info("booking_paid", booking_id=booking_id, actor=actor, stripe_amount=stripe_amount)
    return True


def fail_booking(db: Session, booking: Booking, *, actor: str, reason: str) -> bool:
    """pending -> failed, cancel tickets and give the inventory back.

    The voucher is not touched: a pending booking never drained it.
    """
    booking_id, event_id, quantity = booking.id, booking.event_id, booking.quantity
    if not _compare_and_set_status(db, booking, PaymentStatus.FAILED):
        return False

    cancelled = db.execute(
        update(Ticket)
        .where(Ticket.booking_id == booking_id, transition_guard(Ticket.status, TicketStatus.CANCELLED))
        .values(status=TicketStatus.CANCELLED.value),
        execution_options={"synchronize_session": False},
    ).rowcount
    for obj in list(db.identity_map.values()):
        if isinstance(obj, Ticket):
            db.expire(obj)

    released = release_tickets(db, event_id, quantity)
    log_audit(db, actor=actor, action="booking.failed", entity_type="booking", entity_id=booking_id,
              details={"reason": reason, "tickets_cancelled": cancelled, "inventory_released": released})
    logger.info("booking_failed", booking_id=booking_id, actor=actor, reason=reason, released=released)
    return True
