import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.clock import utcnow
from settlement.core.errors import (
    CodeAllocationError,
    EventNotFoundError,
    EventUnavailableError,
    InsufficientInventoryError,
    ValidationError,
)
from settlement.domain.states import EventStatus, PaymentStatus
from settlement.models.booking import Booking
from settlement.models.customer import Customer
from settlement.models.event import Event
from settlement.models.ticket import Ticket
from settlement.services.audit_service import log_audit
from settlement.services.codes import MAX_CODE_ATTEMPTS, make_booking_code, make_ticket_code
from settlement.services.customer_service import upsert_customer
from settlement.services.gateway import PaymentGateway
from settlement.services.inventory_service import reserve_tickets
from settlement.services.notification_service import NotificationService, notify_booking_confirmed
from settlement.services.payment_split import PaymentSplit, split_payment
from settlement.services.settings_service import CheckoutConfig
from settlement.services.settlement_service import mark_booking_paid
from settlement.services.voucher_service import redeem_voucher, validate_voucher

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    email: str
    phone: str = ""


@dataclass(frozen=True)
class CheckoutRequest:
    event_id: str
    customer: CustomerInfo
    quantity: int
    voucher_code: str | None = None


@dataclass(frozen=True)
class CheckoutResult:
    booking: Booking
    split: PaymentSplit
    payment_completed: bool
    redirect_url: str | None = None
    gateway_url: str | None = None


def _load_event(db: Session, event_id: str, quantity: int) -> Event:
    event = db.get(Event, event_id)
    if not event:
        raise EventNotFoundError(event_id)
    if event.status != EventStatus.ACTIVE:
        raise EventUnavailableError(event.status)
    if event.available_tickets < quantity:
        raise InsufficientInventoryError(quantity, event.available_tickets)
    return event


def _create_booking(db: Session, event: Event, customer: Customer, quantity: int, split: PaymentSplit,
                    voucher_id: str | None) -> Booking:
    """Insert the booking and its tickets under a fresh booking code."""
    for _ in range(MAX_CODE_ATTEMPTS):
        code = make_booking_code()
        if db.query(Booking.id).filter(Booking.booking_code == code).first():
            continue
        booking = Booking(
            id=str(uuid.uuid4()),
            booking_code=code,
            event_id=event.id,
            customer_id=customer.id,
            quantity=quantity,
            total_amount=split.total,
            voucher_amount=split.voucher_amount,
            stripe_amount=0,
            shortfall_amount=0,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=split.method.value,
            voucher_id=voucher_id,
        )
        booking.tickets = [
            Ticket(id=str(uuid.uuid4()), ticket_code=make_ticket_code(code, i)) for i in range(quantity)
        ]
        try:
            with db.begin_nested():
                db.add(booking)
                db.flush()
        except IntegrityError:
            # code taken by a concurrent checkout between the check and the insert
            logger.info("booking_code_collision", booking_code=code)
            continue
        return booking
    raise CodeAllocationError("booking code")


def checkout(
    db: Session,
    req: CheckoutRequest,
    *,
    gateway: PaymentGateway,
    config: CheckoutConfig,
    notifier: NotificationService | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    """Reserve tickets and either settle by voucher or open a gateway session.

    Inventory decrement, booking rows and (for voucher-only) the redemption
    commit together; any failure rolls all of them back.
    """
    if req.quantity < 1 or req.quantity > config.max_quantity:
        raise ValidationError(f"quantity must be between 1 and {config.max_quantity}")
    if not req.customer.email or "@" not in req.customer.email:
        raise ValidationError("a valid customer email is required")
    now = now or utcnow()

    event = _load_event(db, req.event_id, req.quantity)
    total = event.price * req.quantity

    voucher_id = None
    balance = None
    if req.voucher_code:
        check = validate_voucher(db, req.voucher_code, total, event_id=event.id, now=now)
        voucher_id = check.voucher.id
        balance = check.voucher.current_balance
    split = split_payment(total, balance)

    try:
        reserve_tickets(db, event.id, req.quantity)
        customer = upsert_customer(db, req.customer.email, req.customer.name, req.customer.phone)
        booking = _create_booking(db, event, customer, req.quantity, split, voucher_id)
        booking_id = booking.id
        log_audit(db, actor="checkout", action="booking.created", entity_type="booking", entity_id=booking_id,
                  details={"quantity": req.quantity, "method": split.method.value, "total": total})

        if not split.requires_gateway:
            if split.voucher_amount > 0:
                redeem_voucher(db, voucher_id, booking_id, split.voucher_amount, actor="checkout")
            mark_booking_paid(db, booking, stripe_amount=0, actor="checkout")
            db.commit()
        else:
            expires_at = now + timedelta(minutes=config.session_ttl_minutes)
            session = gateway.create_session(
                amount=split.gateway_amount,
                currency=config.currency,
                metadata={
                    "booking_id": booking_id,
                    "booking_code": booking.booking_code,
                    "event_id": event.id,
                    "voucher_id": voucher_id or "",
                    "voucher_amount": str(split.voucher_amount),
                },
                success_url=config.success_url(booking_id),
                cancel_url=config.cancel_url(event.id),
                expires_at=expires_at,
                customer_email=customer.email,
                description=f"{event.title} x{req.quantity}",
            )
            booking.gateway_session_id = session.session_id
            booking.hold_expires_at = session.expires_at
            db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(booking)
    logger.info(
        "checkout_completed",
        booking_id=booking.id,
        booking_code=booking.booking_code,
        method=split.method.value,
        requires_gateway=split.requires_gateway,
    )

    if not split.requires_gateway:
        notify_booking_confirmed(notifier, booking.id)
        return CheckoutResult(booking, split, True, redirect_url=config.confirmation_path(booking.id))
    return CheckoutResult(booking, split, False, gateway_url=session.redirect_url)
