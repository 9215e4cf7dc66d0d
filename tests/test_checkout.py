"""Tests for the checkout orchestrator."""

import pytest

from settlement.core.errors import (
    CodeAllocationError,
    EventNotFoundError,
    EventUnavailableError,
    GatewayError,
    InsufficientInventoryError,
    ValidationError,
    VoucherBalanceConflictError,
    VoucherExpiredError,
    VoucherNotFoundError,
)
from settlement.models.booking import Booking
from settlement.models.customer import Customer
from settlement.models.event import Event
from settlement.models.ticket import Ticket
from settlement.models.voucher import GiftVoucher, VoucherRedemption
from settlement.services import checkout_service
from settlement.services.checkout_service import CheckoutRequest, CustomerInfo, checkout
from settlement.services.voucher_service import verify_ledger


def _request(event, quantity=1, voucher_code=None, email="ada@example.com"):
    return CheckoutRequest(
        event_id=event.id,
        customer=CustomerInfo(name="Ada Lovelace", email=email, phone="+44 20 0000"),
        quantity=quantity,
        voucher_code=voucher_code,
    )


class TestVoucherOnlyCheckout:
    """A voucher that covers the total settles at checkout."""

    def test_full_voucher_settles_immediately(self, db, make_event, make_voucher, gateway, config, notifier):
        """Balance 100.00, total 75.00: paid by voucher, 25.00 left, voucher still active."""
        e = make_event(price=7500, capacity=10)
        v = make_voucher(balance=10000)

        result = checkout(db, _request(e, voucher_code=v.code), gateway=gateway, config=config, notifier=notifier)

        assert result.payment_completed
        assert result.split.voucher_amount == 7500
        assert result.split.gateway_amount == 0
        assert result.redirect_url == f"/booking/success?booking_id={result.booking.id}"
        assert gateway.sessions == []

        b = db.get(Booking, result.booking.id)
        assert (b.payment_status, b.payment_method) == ("paid", "voucher")
        assert b.voucher_amount == 7500 and b.stripe_amount == 0
        assert b.paid_at is not None

        db.refresh(v)
        assert v.current_balance == 2500
        assert v.status == "active"
        assert verify_ledger(db, v)
        assert notifier.sent == [b.id]

    def test_voucher_drained_exactly_is_redeemed(self, db, make_event, make_voucher, gateway, config):
        """A voucher used to the last cent flips to redeemed."""
        e = make_event(price=7500)
        v = make_voucher(balance=7500)
        checkout(db, _request(e, voucher_code=v.code), gateway=gateway, config=config)
        db.refresh(v)
        assert (v.current_balance, v.status) == (0, "redeemed")

    def test_customer_aggregates_updated(self, db, make_event, make_voucher, gateway, config):
        """The paid transition bumps the customer's rollups once."""
        e = make_event(price=2500)
        v = make_voucher(balance=10000)
        checkout(db, _request(e, quantity=2, voucher_code=v.code), gateway=gateway, config=config)
        c = db.query(Customer).filter(Customer.email == "ada@example.com").one()
        assert (c.total_bookings, c.total_spent) == (1, 5000)

    def test_last_tickets_flip_event_soldout(self, db, make_event, make_voucher, gateway, config):
        """Selling the final tickets marks the event soldout."""
        e = make_event(price=1000, capacity=2)
        v = make_voucher(balance=5000)
        checkout(db, _request(e, quantity=2, voucher_code=v.code), gateway=gateway, config=config)
        db.refresh(e)
        assert (e.available_tickets, e.status) == (0, "soldout")

    def test_free_event_settles_without_gateway(self, db, make_event, gateway, config):
        """A zero-priced booking needs no gateway and no voucher."""
        e = make_event(price=0)
        result = checkout(db, _request(e), gateway=gateway, config=config)
        assert result.payment_completed
        assert gateway.sessions == []
        assert db.get(Booking, result.booking.id).payment_status == "paid"
        assert db.query(VoucherRedemption).count() == 0

    def test_notification_failure_does_not_undo_payment(self, db, make_event, make_voucher, gateway, config,
                                                        failing_notifier):
        """A broken notifier is logged; the booking stays paid."""
        e = make_event(price=1000)
        v = make_voucher(balance=5000)
        result = checkout(db, _request(e, voucher_code=v.code), gateway=gateway, config=config,
                          notifier=failing_notifier)
        assert result.payment_completed
        assert db.get(Booking, result.booking.id).payment_status == "paid"


class TestGatewayCheckout:
    """Card-only and mixed checkouts leave a pending booking behind a gateway session."""

    def test_mixed_opens_session_for_remainder_only(self, db, make_event, make_voucher, gateway, config):
        """Balance 50.00, total 75.00: session for 25.00, voucher untouched until completion."""
        e = make_event(price=7500, capacity=10)
        v = make_voucher(balance=5000)

        result = checkout(db, _request(e, voucher_code=v.code), gateway=gateway, config=config)

        assert not result.payment_completed
        assert result.gateway_url == "https://checkout.stripe.test/c/cs_test_1"
        assert (result.split.voucher_amount, result.split.gateway_amount) == (5000, 2500)

        [session] = gateway.sessions
        assert session["amount"] == 2500
        assert session["currency"] == "eur"
        assert session["customer_email"] == "ada@example.com"
        assert session["metadata"] == {
            "booking_id": result.booking.id,
            "booking_code": result.booking.booking_code,
            "event_id": e.id,
            "voucher_id": v.id,
            "voucher_amount": "5000",
        }
        assert "{CHECKOUT_SESSION_ID}" in session["success_url"]

        b = db.get(Booking, result.booking.id)
        assert (b.payment_status, b.payment_method) == ("pending", "mixed")
        assert b.gateway_session_id == "cs_test_1"
        assert b.hold_expires_at is not None
        assert b.voucher_id == v.id

        db.refresh(v)
        assert v.current_balance == 5000
        assert db.query(VoucherRedemption).count() == 0

    def test_card_only_checkout(self, db, make_event, gateway, config, notifier):
        """Without a voucher the gateway charges the full total."""
        e = make_event(price=4500)
        result = checkout(db, _request(e, quantity=2), gateway=gateway, config=config, notifier=notifier)
        assert result.split.method.value == "card"
        assert gateway.sessions[0]["amount"] == 9000
        assert gateway.sessions[0]["metadata"]["voucher_id"] == ""
        assert db.get(Booking, result.booking.id).payment_status == "pending"
        assert notifier.sent == []

    def test_inventory_reserved_before_payment(self, db, make_event, gateway, config):
        """Tickets are held while the customer is at the gateway."""
        e = make_event(capacity=10)
        checkout(db, _request(e, quantity=3), gateway=gateway, config=config)
        db.refresh(e)
        assert e.available_tickets == 7

    def test_tickets_are_numbered_from_booking_code(self, db, make_event, gateway, config):
        """Ticket codes are <booking_code>-T01.. in order."""
        e = make_event()
        result = checkout(db, _request(e, quantity=3), gateway=gateway, config=config)
        code = result.booking.booking_code
        assert code.startswith("EVB-") and len(code) == 12
        assert [t.ticket_code for t in result.booking.tickets] == [f"{code}-T01", f"{code}-T02", f"{code}-T03"]
        assert {t.status for t in result.booking.tickets} == {"valid"}

    def test_gateway_failure_rolls_everything_back(self, db, make_event, make_voucher, gateway, config):
        """A rejected session leaves no booking, no tickets and no inventory hold."""
        e = make_event(capacity=10)
        v = make_voucher(balance=1000)
        gateway.fail_create = True

        with pytest.raises(GatewayError):
            checkout(db, _request(e, quantity=2, voucher_code=v.code), gateway=gateway, config=config)

        db.refresh(e)
        db.refresh(v)
        assert e.available_tickets == 10
        assert v.current_balance == 1000
        assert db.query(Booking).count() == 0
        assert db.query(Ticket).count() == 0

    def test_returning_customer_is_reused(self, db, make_event, gateway, config):
        """Customers are upserted by email, case-insensitively."""
        e = make_event()
        checkout(db, _request(e, email="Ada@Example.com"), gateway=gateway, config=config)
        checkout(db, _request(e, email="ada@example.com"), gateway=gateway, config=config)
        assert db.query(Customer).count() == 1
        c = db.query(Customer).one()
        assert c.total_bookings == 0  # nothing paid yet


class TestCheckoutRejections:
    """Fail-fast errors happen before anything is written."""

    def test_unknown_event(self, db, gateway, config):
        """Missing events raise EventNotFoundError."""
        req = CheckoutRequest("nope", CustomerInfo("Ada", "ada@example.com"), 1)
        with pytest.raises(EventNotFoundError):
            checkout(db, req, gateway=gateway, config=config)

    def test_event_not_active(self, db, make_event, gateway, config):
        """Draft events are not bookable."""
        e = make_event(status="draft")
        with pytest.raises(EventUnavailableError):
            checkout(db, _request(e), gateway=gateway, config=config)

    def test_not_enough_tickets(self, db, make_event, gateway, config):
        """Asking for more than remains is a conflict."""
        e = make_event(capacity=10, available=2)
        with pytest.raises(InsufficientInventoryError):
            checkout(db, _request(e, quantity=3), gateway=gateway, config=config)

    @pytest.mark.parametrize("quantity", [0, 9])
    def test_quantity_outside_configured_bounds(self, db, make_event, gateway, config, quantity):
        """Quantity must be within 1..max_quantity."""
        e = make_event(capacity=20)
        with pytest.raises(ValidationError):
            checkout(db, _request(e, quantity=quantity), gateway=gateway, config=config)

    def test_missing_email(self, db, make_event, gateway, config):
        """An email address is required."""
        e = make_event()
        with pytest.raises(ValidationError):
            checkout(db, _request(e, email=""), gateway=gateway, config=config)

    def test_bad_voucher_writes_nothing(self, db, make_event, gateway, config):
        """A voucher failure leaves inventory and bookings untouched."""
        e = make_event(capacity=10)
        with pytest.raises(VoucherNotFoundError):
            checkout(db, _request(e, voucher_code="GIFT-NOPE-NOPE"), gateway=gateway, config=config)
        db.rollback()
        db.refresh(e)
        assert e.available_tickets == 10
        assert db.query(Booking).count() == 0
        assert db.query(Customer).count() == 0

    def test_expired_voucher(self, db, make_event, make_voucher, gateway, config):
        """Expired vouchers are rejected at checkout."""
        e = make_event()
        v = make_voucher(expires_in_days=-1)
        with pytest.raises(VoucherExpiredError):
            checkout(db, _request(e, voucher_code=v.code), gateway=gateway, config=config)


class TestCheckoutConcurrency:
    """Two sessions racing on shared rows."""

    def test_last_ticket_sold_once(self, session_factory, make_event, gateway, config):
        """Both requests pass the pre-check; only the first reservation wins."""
        e = make_event(capacity=3, available=1)
        s1, s2 = session_factory(), session_factory()
        try:
            s2.get(Event, e.id)  # s2 holds a stale copy showing one ticket left
            checkout(s1, _request(e, email="a@example.com"), gateway=gateway, config=config)
            with pytest.raises(InsufficientInventoryError):
                checkout(s2, _request(e, email="b@example.com"), gateway=gateway, config=config)
            assert s2.query(Booking).count() == 1
            assert s2.get(Event, e.id).available_tickets == 0
        finally:
            s1.close()
            s2.close()

    def test_voucher_cannot_be_spent_twice(self, session_factory, make_event, make_voucher, gateway, config):
        """The second voucher-only checkout loses the balance race and is rolled back."""
        e = make_event(price=4000, capacity=10)
        v = make_voucher(balance=5000)
        s1, s2 = session_factory(), session_factory()
        try:
            s2.get(GiftVoucher, v.id)  # stale balance 50.00 in s2
            checkout(s1, _request(e, voucher_code=v.code), gateway=gateway, config=config)
            with pytest.raises(VoucherBalanceConflictError):
                checkout(s2, _request(e, voucher_code=v.code), gateway=gateway, config=config)

            fresh = s2.get(GiftVoucher, v.id)
            assert fresh.current_balance == 1000
            assert verify_ledger(s2, fresh)
            assert s2.get(Event, e.id).available_tickets == 9
            assert s2.query(Booking).count() == 1
        finally:
            s1.close()
            s2.close()


class TestBookingCodeAllocation:
    """Booking codes are retried on collision."""

    def test_collision_retries_with_fresh_code(self, db, make_event, gateway, config, monkeypatch):
        """An already-used code is skipped."""
        e = make_event()
        first = checkout(db, _request(e), gateway=gateway, config=config)
        taken = first.booking.booking_code

        codes = iter([taken, "EVB-FRESH234"])
        monkeypatch.setattr(checkout_service, "make_booking_code", lambda: next(codes))
        second = checkout(db, _request(e), gateway=gateway, config=config)
        assert second.booking.booking_code == "EVB-FRESH234"

    def test_gives_up_after_max_attempts(self, db, make_event, gateway, config, monkeypatch):
        """Persistent collisions raise CodeAllocationError and roll back the hold."""
        e = make_event(capacity=10)
        first = checkout(db, _request(e), gateway=gateway, config=config)
        taken = first.booking.booking_code
        monkeypatch.setattr(checkout_service, "make_booking_code", lambda: taken)

        with pytest.raises(CodeAllocationError):
            checkout(db, _request(e), gateway=gateway, config=config)
        db.refresh(e)
        assert e.available_tickets == 9
