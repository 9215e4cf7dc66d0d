from dataclasses import dataclass
from sqlalchemy.orm import Session
from settlement.core.config import settings
from settlement.models.setting import Setting

MAX_QUANTITY_KEY = "checkout.max_quantity"
SESSION_TTL_KEY = "checkout.session_ttl_minutes"


@dataclass(frozen=True)
class CheckoutConfig:
    """Checkout knobs resolved once per request and passed down explicitly."""

    currency: str
    max_quantity: int
    session_ttl_minutes: int
    client_base_url: str

    def success_url(self, booking_id: str) -> str:
        # Stripe substitutes {CHECKOUT_SESSION_ID}
        return f"{self.client_base_url}/booking/success?session_id={{CHECKOUT_SESSION_ID}}&booking_id={booking_id}"

    def cancel_url(self, event_id: str) -> str:
        return f"{self.client_base_url}/events/{event_id}?canceled=true"

    def confirmation_path(self, booking_id: str) -> str:
        return f"/booking/success?booking_id={booking_id}"


def get_int_setting(db: Session, key: str, default: int) -> int:
    s = db.get(Setting, key)
    if s and s.int_value:
        return int(s.int_value)
    return default


def resolve_checkout_config(db: Session) -> CheckoutConfig:
    return CheckoutConfig(
        currency=settings.CURRENCY.lower(),
        max_quantity=get_int_setting(db, MAX_QUANTITY_KEY, settings.CHECKOUT_MAX_QUANTITY),
        session_ttl_minutes=get_int_setting(db, SESSION_TTL_KEY, settings.CHECKOUT_SESSION_TTL_MINUTES),
        client_base_url=settings.CLIENT_BASE_URL.rstrip("/"),
    )
