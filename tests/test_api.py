"""HTTP tests for the public checkout API and the Stripe webhook."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from settlement.api.deps import get_gateway, get_notifier
from settlement.db.session import get_db
from settlement.main import app
from settlement.models.booking import Booking
from settlement.models.setting import Setting
from settlement.services.webhook_service import FinalizeOutcome


@pytest.fixture
def client(session_factory, gateway, notifier):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class LoopCheckingNotifier:
    def __init__(self):
        self.calls = []

    def send_booking_confirmation(self, booking_id):
        self.calls.append((booking_id, _on_event_loop()))


def _checkout_body(event_id, quantity=1, voucher_code=None):
    body = {
        "eventId": event_id,
        "customerInfo": {"name": "Ada Lovelace", "email": "ada@example.com"},
        "quantity": quantity,
    }
    if voucher_code:
        body["voucherCode"] = voucher_code
    return body


class TestHealth:
    def test_health(self, client):
        """Health check answers ok."""
        assert client.get("/health").json() == {"status": "ok"}


class TestCheckoutEndpoint:
    """POST /api/v1/public/checkout."""

    def test_voucher_only_checkout(self, client, make_event, make_voucher, notifier):
        """A covering voucher returns paymentCompleted with a redirect."""
        e = make_event(price=7500)
        v = make_voucher(balance=10000)
        r = client.post("/api/v1/public/checkout", json=_checkout_body(e.id, voucher_code=v.code))
        assert r.status_code == 200
        data = r.json()
        assert data["paymentCompleted"] is True
        assert data["redirectUrl"] == f"/booking/success?booking_id={data['bookingId']}"
        assert data["gatewayUrl"] is None
        assert (data["totalAmount"], data["voucherAmount"], data["gatewayAmount"]) == (7500, 7500, 0)
        assert data["paymentMethod"] == "voucher"
        assert notifier.sent == [data["bookingId"]]

    def test_mixed_checkout_returns_gateway_url(self, client, make_event, make_voucher, gateway):
        """A partial voucher sends the customer to the gateway for the remainder."""
        e = make_event(price=7500)
        v = make_voucher(balance=5000)
        r = client.post("/api/v1/public/checkout", json=_checkout_body(e.id, voucher_code=v.code))
        assert r.status_code == 200
        data = r.json()
        assert data["paymentCompleted"] is False
        assert data["gatewayUrl"].startswith("https://checkout.stripe.test/")
        assert (data["voucherAmount"], data["gatewayAmount"], data["paymentMethod"]) == (5000, 2500, "mixed")
        assert gateway.sessions[0]["amount"] == 2500

    def test_unknown_event_is_404(self, client):
        """Missing events map to 404 with a stable code."""
        r = client.post("/api/v1/public/checkout", json=_checkout_body("missing"))
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "EVENT_NOT_FOUND"

    def test_sold_out_is_409(self, client, make_event):
        """Not enough tickets maps to 409."""
        e = make_event(capacity=5, available=1)
        r = client.post("/api/v1/public/checkout", json=_checkout_body(e.id, quantity=2))
        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "INSUFFICIENT_INVENTORY"

    def test_quantity_above_configured_max_is_400(self, client, make_event, db):
        """The per-request limit comes from the settings table."""
        e = make_event(capacity=20)
        db.add(Setting(key="checkout.max_quantity", int_value=2))
        db.commit()
        r = client.post("/api/v1/public/checkout", json=_checkout_body(e.id, quantity=3))
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "VALIDATION_FAILED"

    def test_invalid_voucher_is_404(self, client, make_event):
        """Unknown voucher codes map to 404."""
        e = make_event()
        r = client.post("/api/v1/public/checkout", json=_checkout_body(e.id, voucher_code="GIFT-NOPE-NOPE"))
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "VOUCHER_NOT_FOUND"

    def test_gateway_failure_is_502(self, client, make_event, gateway):
        """A rejected gateway session maps to 502."""
        e = make_event()
        gateway.fail_create = True
        r = client.post("/api/v1/public/checkout", json=_checkout_body(e.id))
        assert r.status_code == 502
        assert r.json()["detail"]["code"] == "GATEWAY_ERROR"

    def test_malformed_body_is_422(self, client):
        """Missing required fields are rejected by the schema."""
        r = client.post("/api/v1/public/checkout", json={"quantity": 1})
        assert r.status_code == 422


class TestVoucherValidateEndpoint:
    """POST /api/v1/public/vouchers/validate."""

    def test_valid_voucher(self, client, make_voucher):
        """Valid vouchers report balance, usable amount and warnings."""
        v = make_voucher(balance=5000)
        r = client.post("/api/v1/public/vouchers/validate", json={"code": v.code, "amount": 7500})
        data = r.json()
        assert r.status_code == 200
        assert data["valid"] is True
        assert data["voucher"]["currentBalance"] == 5000
        assert data["voucher"]["maxUsableAmount"] == 5000
        assert [w["type"] for w in data["warnings"]] == ["PARTIAL_COVERAGE"]

    def test_missing_or_zero_amount_reports_balance(self, client, make_voucher):
        """Without an amount the full balance is usable."""
        v = make_voucher(balance=5000)
        for body in ({"code": v.code}, {"code": v.code, "amount": 0}):
            data = client.post("/api/v1/public/vouchers/validate", json=body).json()
            assert data["valid"] is True
            assert data["voucher"]["maxUsableAmount"] == 5000
            assert data["warnings"] == []

    def test_expired_voucher_is_invalid(self, client, make_voucher):
        """Failures come back as valid=false with an errorCode."""
        v = make_voucher(expires_in_days=-1)
        r = client.post("/api/v1/public/vouchers/validate", json={"code": v.code, "amount": 100})
        data = r.json()
        assert r.status_code == 200
        assert data["valid"] is False
        assert data["errorCode"] == "VOUCHER_EXPIRED"
        assert data["voucher"] is None

    def test_event_mismatch(self, client, make_event, make_voucher):
        """Scoped vouchers fail for other events."""
        scoped, other = make_event(), make_event(title="Escape the Vault", category="escape")
        v = make_voucher(event_id=scoped.id)
        r = client.post("/api/v1/public/vouchers/validate",
                        json={"code": v.code, "amount": 100, "eventId": other.id})
        assert r.json()["errorCode"] == "VOUCHER_EVENT_MISMATCH"


class TestStripeWebhook:
    """POST /api/v1/webhooks/stripe."""

    def _checkout(self, client, event_id, **kw):
        return client.post("/api/v1/public/checkout", json=_checkout_body(event_id, **kw)).json()

    def test_completed_marks_paid(self, client, make_event, signed_event, session_factory, notifier):
        """A signed completion settles the booking."""
        e = make_event(price=4500)
        booking_id = self._checkout(client, e.id)["bookingId"]
        payload, header = signed_event("checkout.session.completed", "cs_test_1", amount=4500,
                                       metadata={"booking_id": booking_id})

        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert r.status_code == 200
        assert r.json() == {"received": True, "outcome": "applied"}

        s = session_factory()
        try:
            assert s.get(Booking, booking_id).payment_status == "paid"
        finally:
            s.close()
        assert notifier.sent == [booking_id]

    def test_replayed_delivery_is_acknowledged(self, client, make_event, signed_event):
        """The same event twice is applied once and acknowledged both times."""
        e = make_event(price=4500)
        self._checkout(client, e.id)
        payload, header = signed_event("checkout.session.completed", "cs_test_1", amount=4500)
        first = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        second = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert first.json()["outcome"] == "applied"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"

    def test_bad_signature_is_400_and_changes_nothing(self, client, make_event, signed_event, session_factory):
        """Unverified payloads are rejected before any processing."""
        e = make_event(price=4500)
        booking_id = self._checkout(client, e.id)["bookingId"]
        payload, _ = signed_event("checkout.session.completed", "cs_test_1", amount=4500)

        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": "t=1,v1=bad"})
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_SIGNATURE"

        s = session_factory()
        try:
            assert s.get(Booking, booking_id).payment_status == "pending"
        finally:
            s.close()

    def test_missing_signature_is_400(self, client, signed_event):
        """No header means no processing."""
        payload, _ = signed_event("checkout.session.completed", "cs_test_1")
        assert client.post("/api/v1/webhooks/stripe", content=payload).status_code == 400

    def test_non_utf8_body_is_400(self, client):
        """Undecodable bodies are a client error, not a server error."""
        r = client.post("/api/v1/webhooks/stripe", content=b"\xff\xfe garbage",
                        headers={"stripe-signature": "t=1,v1=deadbeef"})
        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "INVALID_SIGNATURE"

    def test_unknown_event_type_is_acknowledged(self, client, signed_event):
        """Event types we do not handle get a 200 so Stripe stops retrying."""
        payload, header = signed_event("customer.created", "cus_1")
        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert r.status_code == 200
        assert r.json()["outcome"] == "ignored"

    def test_expired_releases_inventory(self, client, make_event, signed_event, session_factory):
        """A signed expiry fails the booking and restores the tickets."""
        e = make_event(price=1000, capacity=10)
        booking_id = self._checkout(client, e.id, quantity=3)["bookingId"]
        payload, header = signed_event("checkout.session.expired", "cs_test_1")
        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert r.json()["outcome"] == "applied"

        s = session_factory()
        try:
            assert s.get(Booking, booking_id).payment_status == "failed"
            assert s.get(type(e), e.id).available_tickets == 10
        finally:
            s.close()

    def test_processing_error_is_500(self, client, make_event, signed_event, monkeypatch):
        """Unexpected failures answer 500 so the gateway retries."""
        from settlement.api.v1.routes import webhooks

        def _boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(webhooks, "handle_gateway_event", _boom)
        payload, header = signed_event("checkout.session.completed", "cs_test_1", amount=100)
        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert r.status_code == 500
        assert r.json() == {"received": False}


    def test_processing_runs_off_the_event_loop(self, client, signed_event, monkeypatch):
        """Blocking settlement work is handed to a worker thread."""
        from settlement.api.v1.routes import webhooks

        seen = []

        def _record(db, event, notifier=None):
            seen.append(_on_event_loop())
            return FinalizeOutcome.IGNORED

        monkeypatch.setattr(webhooks, "handle_gateway_event", _record)
        payload, header = signed_event("checkout.session.completed", "cs_test_1", amount=100)
        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert r.json()["outcome"] == "ignored"
        assert seen == [False]

    def test_confirmation_sent_after_response_off_the_loop(self, client, make_event, signed_event):
        """The email is scheduled as a background task, not sent on the event loop."""
        loop_notifier = LoopCheckingNotifier()
        app.dependency_overrides[get_notifier] = lambda: loop_notifier
        e = make_event(price=4500)
        booking_id = self._checkout(client, e.id)["bookingId"]
        payload, header = signed_event("checkout.session.completed", "cs_test_1", amount=4500)
        r = client.post("/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": header})
        assert r.json()["outcome"] == "applied"
        assert loop_notifier.calls == [(booking_id, False)]


class TestBookingLookup:
    """GET /api/v1/public/bookings/{booking_id}."""

    def test_returns_status_and_tickets(self, client, make_event):
        """The success page can poll a booking by id."""
        e = make_event(price=4500)
        created = client.post("/api/v1/public/checkout", json=_checkout_body(e.id, quantity=2)).json()
        r = client.get(f"/api/v1/public/bookings/{created['bookingId']}")
        assert r.status_code == 200
        data = r.json()
        assert data["bookingCode"] == created["bookingCode"]
        assert data["paymentStatus"] == "pending"
        assert data["holdExpiresAt"] is not None
        assert [t["ticketCode"] for t in data["tickets"]] == [
            f"{created['bookingCode']}-T01",
            f"{created['bookingCode']}-T02",
        ]

    def test_unknown_booking_is_404(self, client):
        """Missing bookings are 404."""
        assert client.get("/api/v1/public/bookings/nope").status_code == 404
