"""Payment gateway boundary.

The engine talks to ``PaymentGateway`` only; ``StripeGateway`` is the
production adapter backed by Stripe Checkout.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import stripe
import structlog

from settlement.core.config import settings
from settlement.core.errors import GatewayError, SignatureError, ValidationError

logger = structlog.get_logger(__name__)


class GatewayEventKind(str, Enum):
    COMPLETED = "completed"
    EXPIRED = "expired"
    IGNORED = "ignored"


@dataclass(frozen=True)
class GatewaySession:
    session_id: str
    redirect_url: str
    expires_at: datetime


@dataclass(frozen=True)
class GatewayEvent:
    kind: GatewayEventKind
    event_type: str
    event_id: str = ""
    session_id: str | None = None
    amount_charged: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewaySessionState:
    """What the gateway currently knows about a session (open, complete, expired)."""

    session_id: str
    status: str
    amount_charged: int | None = None


class PaymentGateway(ABC):
    """Interface for the external card-payment gateway."""

    @abstractmethod
    def create_session(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        customer_email: str | None = None,
        description: str = "",
    ) -> GatewaySession:
        """Open a checkout session for ``amount`` minor units.

        Raises:
            GatewayError: gateway unreachable or rejected the session.
        """
        ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        """Verify the signature and parse a webhook payload.

        Raises:
            SignatureError: missing or invalid signature.
        """
        ...

    @abstractmethod
    def retrieve_session(self, session_id: str) -> GatewaySessionState:
        """Ask the gateway for a session's current state.

        Raises:
            GatewayError: gateway unreachable.
        """
        ...


def _metadata(obj: dict) -> dict[str, str]:
    return {str(k): str(v) for k, v in (obj.get("metadata") or {}).items()}


def parse_stripe_event(data: dict) -> GatewayEvent:
    """Map a Stripe event body onto the engine's completed/expired/ignored kinds."""
    event_type = str(data.get("type") or "")
    event_id = str(data.get("id") or "")
    obj = (data.get("data") or {}).get("object") or {}
    session_id = obj.get("id")
    amount = obj.get("amount_total")

    if event_type == "checkout.session.completed":
        # delayed payment methods complete the session before the money arrives
        if obj.get("payment_status") not in ("paid", "no_payment_required"):
            return GatewayEvent(GatewayEventKind.IGNORED, event_type, event_id, session_id, None, _metadata(obj))
        return GatewayEvent(GatewayEventKind.COMPLETED, event_type, event_id, session_id, amount, _metadata(obj))
    if event_type == "checkout.session.async_payment_succeeded":
        return GatewayEvent(GatewayEventKind.COMPLETED, event_type, event_id, session_id, amount, _metadata(obj))
    if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
        return GatewayEvent(GatewayEventKind.EXPIRED, event_type, event_id, session_id, None, _metadata(obj))
    return GatewayEvent(GatewayEventKind.IGNORED, event_type, event_id, session_id, None, _metadata(obj))


class StripeGateway(PaymentGateway):
    def __init__(self, secret_key: str, webhook_secret: str, tolerance: int = 300):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def create_session(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        customer_email: str | None = None,
        description: str = "",
    ) -> GatewaySession:
        if not self.secret_key:
            raise GatewayError("Stripe is not configured")
        if amount <= 0:
            raise ValidationError("gateway amount must be positive")

        params = dict(
            api_key=self.secret_key,
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": description or "Event booking"},
                    "unit_amount": amount,
                },
                "quantity": 1,
            }],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={k: str(v) for k, v in metadata.items()},
            expires_at=int(expires_at.timestamp()),
        )
        if customer_email:
            params["customer_email"] = customer_email
        if metadata.get("booking_id"):
            params["idempotency_key"] = f"checkout-{metadata['booking_id']}"

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error("stripe_session_failed", error=str(e), error_type=type(e).__name__)
            raise GatewayError(f"Payment gateway rejected the session: {e.user_message or e}") from e

        logger.info("stripe_session_created", session_id=session.id, amount=amount, currency=currency)
        return GatewaySession(session_id=session.id, redirect_url=session.url, expires_at=expires_at)

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not signature or not self.webhook_secret:
            raise SignatureError()
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            # Stripe signs UTF-8 JSON; anything else cannot carry a valid signature
            logger.warning("webhook_payload_not_utf8")
            raise SignatureError() from e
        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureError() from e
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ValidationError("Malformed webhook payload") from e
        return parse_stripe_event(data)

    def retrieve_session(self, session_id: str) -> GatewaySessionState:
        if not self.secret_key:
            raise GatewayError("Stripe is not configured")
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise GatewayError(f"Could not retrieve session: {e}") from e
        status = session.status or ""
        if status == "complete" and session.payment_status not in ("paid", "no_payment_required"):
            status = "open"
        return GatewaySessionState(session_id=session.id, status=status, amount_charged=session.amount_total)


def build_gateway() -> PaymentGateway:
    return StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )
