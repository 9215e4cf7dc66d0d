"""Pytest configuration and shared fixtures.

Every test gets its own SQLite file so two sessions can race on the same rows.
"""

import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from settlement.core.clock import utcnow
from settlement.core.errors import GatewayError
from settlement.db.session import Base
import settlement.models  # noqa: F401
from settlement.models.booking import Booking
from settlement.models.customer import Customer
from settlement.models.event import Event
from settlement.models.voucher import GiftVoucher
from settlement.services.gateway import GatewaySession, GatewaySessionState, StripeGateway
from settlement.services.notification_service import NotificationService
from settlement.services.settings_service import CheckoutConfig

WEBHOOK_SECRET = "whsec_test_secret"


class FakeStripeGateway(StripeGateway):
    """Stripe adapter with the network calls replaced; signature checks stay real."""

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, tolerance=300)
        self.sessions: list[dict] = []
        self.states: dict[str, GatewaySessionState] = {}
        self.fail_create = False

    def create_session(self, *, amount, currency, metadata, success_url, cancel_url, expires_at,
                       customer_email=None, description=""):
        if self.fail_create:
            raise GatewayError("Payment gateway rejected the session: card_declined")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({
            "session_id": session_id,
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
        })
        return GatewaySession(session_id, f"https://checkout.stripe.test/c/{session_id}", expires_at)

    def retrieve_session(self, session_id):
        return self.states.get(session_id, GatewaySessionState(session_id, "open"))


class RecordingNotifier(NotificationService):
    def __init__(self, fail=False):
        self.sent: list[str] = []
        self.fail = fail

    def send_booking_confirmation(self, booking_id):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(booking_id)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload.decode()}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type: str, session_id: str, *, amount=None, metadata=None, payment_status="paid") -> bytes:
    body = {
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount,
                "payment_status": payment_status,
                "metadata": metadata or {},
            }
        },
    }
    return json.dumps(body).encode()


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    return CheckoutConfig(currency="eur", max_quantity=8, session_ttl_minutes=30, client_base_url="http://shop.test")


@pytest.fixture
def make_event(db):
    def _make(price=4500, capacity=10, available=None, status="active", category="murder", title="Murder at the Manor"):
        e = Event(
            id=str(uuid.uuid4()),
            title=title,
            category=category,
            price=price,
            capacity=capacity,
            available_tickets=capacity if available is None else available,
            status=status,
        )
        db.add(e)
        db.commit()
        return e
    return _make


@pytest.fixture
def make_voucher(db):
    counter = iter(range(1, 10_000))

    def _make(balance=5000, original=None, status="active", expires_in_days=30, event_id=None, code=None):
        v = GiftVoucher(
            id=str(uuid.uuid4()),
            code=code or f"GIFT-TEST-{next(counter):04d}",
            original_amount=balance if original is None else original,
            current_balance=balance,
            status=status,
            expiry_date=utcnow() + timedelta(days=expires_in_days),
            event_id=event_id,
        )
        db.add(v)
        db.commit()
        return v
    return _make


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def signed_event():
    """Build a Stripe event body and a valid ``Stripe-Signature`` header for it."""
    def _build(event_type, session_id, **kwargs):
        payload = stripe_event(event_type, session_id, **kwargs)
        return payload, sign_payload(payload)
    return _build


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def make_booking_for(db):
    """Insert a bare pending booking for ``event`` (no checkout, no inventory hold)."""
    counter = iter(range(1, 10_000))

    def _make(event, email="other@example.com"):
        c = db.query(Customer).filter(Customer.email == email).first()
        if not c:
            c = Customer(email=email, name="Other")
            db.add(c)
            db.flush()
        b = Booking(
            booking_code=f"EVB-OTHR{next(counter):04d}",
            event_id=event.id,
            customer_id=c.id,
            quantity=1,
            total_amount=event.price,
        )
        db.add(b)
        db.commit()
        return b
    return _make
