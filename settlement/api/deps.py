from fastapi import BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement.core.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    SettlementError,
    SignatureError,
    ValidationError,
)
from settlement.db.session import SessionLocal, get_db
from settlement.services.gateway import PaymentGateway, build_gateway
from settlement.services.notification_service import (
    DeferredNotifier,
    EmailNotificationService,
    NotificationService,
)
from settlement.services.settings_service import CheckoutConfig, resolve_checkout_config

_STATUS_BY_ERROR = (
    (SignatureError, 400),
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (GatewayError, 502),
)


def http_error(e: SettlementError) -> HTTPException:
    """Translate a settlement error into an HTTPException carrying ``{code, message}``."""
    status = next((s for cls, s in _STATUS_BY_ERROR if isinstance(e, cls)), 500)
    return HTTPException(status_code=status, detail={"code": e.code.value, "message": e.message})


def get_gateway() -> PaymentGateway:
    return build_gateway()


def get_notifier() -> NotificationService:
    return EmailNotificationService(SessionLocal)


def get_deferred_notifier(
    background_tasks: BackgroundTasks,
    notifier: NotificationService = Depends(get_notifier),
) -> NotificationService:
    """Wraps the notifier so confirmations are sent after the response."""
    return DeferredNotifier(background_tasks, notifier)


def get_checkout_config(db: Session = Depends(get_db)) -> CheckoutConfig:
    return resolve_checkout_config(db)
