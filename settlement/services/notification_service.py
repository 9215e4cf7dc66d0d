"""Booking confirmations.

Notifications sit outside settlement: they run after the commit, and a
failure is logged and never undoes or blocks a paid booking.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from string import Template

import structlog
from sqlalchemy.orm import Session, sessionmaker

from settlement.models.booking import Booking
from settlement.models.customer import Customer
from settlement.models.event import Event
from settlement.models.setting import Setting
from settlement.services.email_service import queue_email
from settlement.services.voucher_service import format_amount

logger = structlog.get_logger(__name__)

DEFAULT_CONFIRMATION_TEMPLATE = (
    "Hi $customer_name,\n\n"
    "Your booking $booking_code for $event_title is confirmed.\n"
    "Tickets ($quantity): $ticket_codes\n"
    "Total: $total (voucher $voucher_amount, card $card_amount)\n\n"
    "See you there!\n"
)


class NotificationService(ABC):
    @abstractmethod
    def send_booking_confirmation(self, booking_id: str) -> None:
        ...


def event_template_key(event_id: str) -> str:
    return f"email.confirmation_template.event.{event_id}"


def category_template_key(category: str) -> str:
    return f"email.{category}_confirmation_template"


GLOBAL_TEMPLATE_KEY = "email.default_confirmation_template"


def resolve_template(templates: Mapping[str, str], event_id: str, category: str | None) -> str | None:
    """Pick the most specific template: event, then category, then global."""
    candidates = [event_template_key(event_id)]
    if category:
        candidates.append(category_template_key(category))
    candidates.append(GLOBAL_TEMPLATE_KEY)
    for key in candidates:
        value = templates.get(key)
        if value:
            return value
    return None


def _load_templates(db: Session, event: Event) -> dict[str, str]:
    keys = [event_template_key(event.id), GLOBAL_TEMPLATE_KEY]
    if event.category:
        keys.append(category_template_key(event.category))
    rows = db.query(Setting).filter(Setting.key.in_(keys)).all()
    return {r.key: r.str_value for r in rows if r.str_value}


class EmailNotificationService(NotificationService):
    """Queues a plain-text confirmation through the email log."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def send_booking_confirmation(self, booking_id: str) -> None:
        db = self._session_factory()
        try:
            b = db.get(Booking, booking_id)
            if not b or b.confirmation_sent:
                return
            event = db.get(Event, b.event_id)
            customer = db.get(Customer, b.customer_id)
            if not event or not customer:
                return

            template = resolve_template(_load_templates(db, event), event.id, event.category)
            body = Template(template or DEFAULT_CONFIRMATION_TEMPLATE).safe_substitute(
                customer_name=customer.name,
                booking_code=b.booking_code,
                event_title=event.title,
                quantity=b.quantity,
                ticket_codes=", ".join(t.ticket_code for t in b.tickets),
                total=format_amount(b.total_amount),
                voucher_amount=format_amount(b.voucher_amount),
                card_amount=format_amount(b.stripe_amount),
            )
            subject = f"Booking confirmed: {event.title} ({b.booking_code})"
            _, sent = queue_email(db, customer.email, subject, body, related_booking_code=b.booking_code)
            if sent:
                b.confirmation_sent = True
                db.commit()
        finally:
            db.close()


def notify_booking_confirmed(notifier: NotificationService | None, booking_id: str) -> None:
    """Fire-and-forget wrapper: errors are logged, never raised."""
    if notifier is None:
        return
    try:
        notifier.send_booking_confirmation(booking_id)
    except Exception:
        logger.exception("booking_confirmation_failed", booking_id=booking_id)


class DeferredNotifier(NotificationService):
    """Schedules confirmations on a task queue instead of sending inline.

    ``tasks`` is anything with ``add_task(func, *args)``, e.g. FastAPI's
    ``BackgroundTasks``, which runs them after the response is sent.
    """

    def __init__(self, tasks, inner: NotificationService):
        self._tasks = tasks
        self._inner = inner

    def send_booking_confirmation(self, booking_id: str) -> None:
        self._tasks.add_task(notify_booking_confirmed, self._inner, booking_id)
