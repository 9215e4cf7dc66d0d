import uuid
from datetime import timedelta

from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session

from settlement.core.clock import utcnow
from settlement.db.session import SessionLocal
from settlement.domain.states import EventStatus
from settlement.models.event import Event
from settlement.models.setting import Setting
from settlement.services.notification_service import category_template_key
from settlement.services.voucher_service import get_voucher_by_code, issue_voucher

DEMO_EVENTS = [
    # title, category, price (cents), capacity
    ("Murder at the Manor", "murder", 4500, 24),
    ("Escape the Vault", "escape", 3000, 6),
]

# fixed codes so the storefront can be tried by hand
DEMO_VOUCHERS = [
    ("GIFT-DEMO-0050", 5000),
    ("GIFT-DEMO-0200", 20000),
]

MURDER_TEMPLATE = (
    "Dear $customer_name,\n\n"
    "The manor awaits. Booking $booking_code for $event_title is confirmed.\n"
    "Your invitations ($quantity): $ticket_codes\n"
    "Total: $total\n\n"
    "Come dressed for the occasion.\n"
)


def ensure_event(db: Session, title: str, category: str, price: int, capacity: int):
    if db.query(Event).filter(Event.title == title).first():
        return
    db.add(Event(
        id=str(uuid.uuid4()),
        title=title,
        category=category,
        price=price,
        capacity=capacity,
        available_tickets=capacity,
        status=EventStatus.ACTIVE.value,
        starts_at=utcnow() + timedelta(days=30),
    ))


def ensure_voucher(db: Session, code: str, amount: int):
    if get_voucher_by_code(db, code):
        return
    issue_voucher(db, amount, code=code, purchaser_name="Demo", purchaser_email="demo@events.local")


def run(db=None):
    if db is None:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM events LIMIT 1"))
        except ProgrammingError:
            db.rollback()
            print("[seed] events table not found yet. Skipping seeding (run alembic upgrade head).")
            return

        for title, category, price, capacity in DEMO_EVENTS:
            ensure_event(db, title, category, price, capacity)
        for code, amount in DEMO_VOUCHERS:
            ensure_voucher(db, code, amount)

        key = category_template_key("murder")
        if not db.get(Setting, key):
            db.add(Setting(key=key, int_value=None, str_value=MURDER_TEMPLATE))
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    run()
