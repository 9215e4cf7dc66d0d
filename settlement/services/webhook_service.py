"""Gateway event finalization.

Completed and expired events both funnel into the compare-and-set
transitions in ``settlement_service``; replays, out-of-order deliveries and
the hold sweep racing a webhook all resolve to a single applied effect.
"""

from datetime import datetime, timedelta
from enum import Enum

import structlog
from sqlalchemy.orm import Session

from settlement.core.clock import utcnow
from settlement.core.errors import GatewayError, InvalidTransitionError
from settlement.domain.states import PaymentMethod, PaymentStatus, is_settled
from settlement.models.booking import Booking
from settlement.services.audit_service import log_audit
from settlement.services.gateway import GatewayEvent, GatewayEventKind, PaymentGateway
from settlement.services.notification_service import NotificationService, notify_booking_confirmed
from settlement.services.settlement_service import fail_booking, mark_booking_paid
from settlement.services.voucher_service import redeem_available

logger = structlog.get_logger(__name__)


class FinalizeOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    UNKNOWN_BOOKING = "unknown_booking"
    IGNORED = "ignored"


def find_booking(db: Session, session_id: str | None, metadata: dict[str, str] | None = None) -> Booking | None:
    """Look the booking up by gateway session id, then by ``booking_id`` metadata."""
    if session_id:
        b = db.query(Booking).filter(Booking.gateway_session_id == session_id).first()
        if b:
            return b
    booking_id = (metadata or {}).get("booking_id")
    if booking_id:
        return db.get(Booking, booking_id)
    return None


def finalize_completed(
    db: Session,
    booking: Booking,
    *,
    amount_charged: int | None,
    actor: str = "stripe_webhook",
    notifier: NotificationService | None = None,
) -> FinalizeOutcome:
    """pending -> paid for a booking whose card payment went through."""
    booking_id = booking.id
    if booking.payment_status == PaymentStatus.PAID:
        logger.info("webhook_duplicate", booking_id=booking_id, status=booking.payment_status)
        return FinalizeOutcome.DUPLICATE

    expected = booking.total_amount - booking.voucher_amount
    charged = expected if amount_charged is None else amount_charged
    if charged != expected:
        logger.warning("gateway_amount_mismatch", booking_id=booking_id, expected=expected, charged=charged)

    try:
        applied = mark_booking_paid(db, booking, stripe_amount=charged, actor=actor)
    except InvalidTransitionError:
        db.rollback()
        logger.error("payment_after_expiry", booking_id=booking_id, status=booking.payment_status,
                     amount_charged=charged)
        log_audit(db, actor=actor, action="booking.payment_after_expiry", entity_type="booking",
                  entity_id=booking_id, details={"status": booking.payment_status, "amount_charged": charged})
        db.commit()
        return FinalizeOutcome.REJECTED

    if not applied:
        db.rollback()
        logger.info("webhook_duplicate", booking_id=booking_id)
        return FinalizeOutcome.DUPLICATE

    if booking.payment_method == PaymentMethod.MIXED and booking.voucher_id and booking.voucher_amount > 0:
        deferred = booking.voucher_amount
        # the card has been charged; the voucher may have expired or been drained meanwhile
        redeemed = redeem_available(db, booking.voucher_id, booking_id, deferred, allow_expired=True, actor=actor)
        if redeemed < deferred:
            shortfall = deferred - redeemed
            booking.voucher_amount = redeemed
            booking.shortfall_amount = shortfall
            log_audit(db, actor=actor, action="voucher.shortfall", entity_type="booking", entity_id=booking_id,
                      details={"voucher_id": booking.voucher_id, "deferred": deferred, "redeemed": redeemed})
            logger.warning("voucher_shortfall", booking_id=booking_id, voucher_id=booking.voucher_id,
                           deferred=deferred, redeemed=redeemed)

    db.commit()
    notify_booking_confirmed(notifier, booking_id)
    return FinalizeOutcome.APPLIED


def finalize_expired(
    db: Session,
    booking: Booking,
    *,
    actor: str = "stripe_webhook",
    reason: str = "session_expired",
) -> FinalizeOutcome:
    """pending -> failed with inventory compensation; terminal bookings are left alone."""
    if is_settled(booking.payment_status):
        logger.info("expiry_ignored", booking_id=booking.id, status=booking.payment_status)
        return FinalizeOutcome.DUPLICATE
    if not fail_booking(db, booking, actor=actor, reason=reason):
        db.rollback()
        return FinalizeOutcome.DUPLICATE
    db.commit()
    return FinalizeOutcome.APPLIED


def handle_gateway_event(
    db: Session,
    event: GatewayEvent,
    *,
    notifier: NotificationService | None = None,
) -> FinalizeOutcome:
    """Apply a verified gateway event. Errors propagate so the delivery is retried."""
    log = logger.bind(event_type=event.event_type, event_id=event.event_id, session_id=event.session_id)
    if event.kind == GatewayEventKind.IGNORED:
        log.info("webhook_ignored")
        return FinalizeOutcome.IGNORED

    booking = find_booking(db, event.session_id, event.metadata)
    if not booking:
        log.warning("webhook_unknown_booking", metadata=event.metadata)
        return FinalizeOutcome.UNKNOWN_BOOKING

    if event.kind == GatewayEventKind.COMPLETED:
        outcome = finalize_completed(db, booking, amount_charged=event.amount_charged, notifier=notifier)
    else:
        outcome = finalize_expired(db, booking)
    log.info("webhook_processed", booking_id=booking.id, outcome=outcome.value)
    return outcome


def expire_stale_holds(
    db: Session,
    gateway: PaymentGateway,
    *,
    now: datetime | None = None,
    grace_minutes: int = 15,
    notifier: NotificationService | None = None,
    limit: int = 100,
) -> dict[str, int]:
    """Settle pending bookings whose hold lapsed and whose webhook never came.

    The gateway is asked for the session state first: a session that did
    complete is finalized as paid, an open one is left for its webhook.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=grace_minutes)
    stale = (
        db.query(Booking)
        .filter(
            Booking.payment_status == PaymentStatus.PENDING.value,
            Booking.hold_expires_at.is_not(None),
            Booking.hold_expires_at < cutoff,
        )
        .order_by(Booking.hold_expires_at)
        .limit(limit)
        .all()
    )

    counts = {"paid": 0, "failed": 0, "skipped": 0}
    for b in stale:
        booking_id = b.id
        state = None
        if b.gateway_session_id:
            try:
                state = gateway.retrieve_session(b.gateway_session_id)
            except GatewayError as e:
                logger.warning("hold_sweep_lookup_failed", booking_id=booking_id, error=e.message)
                counts["skipped"] += 1
                continue

        if state and state.status == "complete":
            outcome = finalize_completed(db, b, amount_charged=state.amount_charged, actor="hold_sweep",
                                         notifier=notifier)
            key = "paid"
        elif state and state.status == "open":
            outcome = FinalizeOutcome.IGNORED
            key = "skipped"
        else:
            outcome = finalize_expired(db, b, actor="hold_sweep", reason="hold_expired")
            key = "failed"

        if outcome == FinalizeOutcome.APPLIED:
            counts[key] += 1
        else:
            counts["skipped"] += 1
        logger.info("hold_swept", booking_id=booking_id, outcome=outcome.value)
    return counts
