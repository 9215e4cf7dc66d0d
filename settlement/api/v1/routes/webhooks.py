import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from settlement.api.deps import get_deferred_notifier, get_gateway, http_error
from settlement.core.errors import SettlementError, SignatureError, ValidationError
from settlement.db.session import get_db
from settlement.services.gateway import GatewayEvent, PaymentGateway
from settlement.services.notification_service import NotificationService
from settlement.services.webhook_service import handle_gateway_event

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["webhooks"])


def _process(db: Session, event: GatewayEvent, notifier: NotificationService):
    try:
        outcome = handle_gateway_event(db, event, notifier=notifier)
    except SettlementError as e:
        db.rollback()
        logger.error("webhook_processing_failed", event_id=event.event_id, session_id=event.session_id,
                     code=e.code.value, error=e.message)
        return JSONResponse(status_code=500, content={"received": False, "code": e.code.value})
    except Exception:
        db.rollback()
        logger.exception("webhook_processing_failed", event_id=event.event_id, session_id=event.session_id)
        return JSONResponse(status_code=500, content={"received": False})
    return {"received": True, "outcome": outcome.value}


@router.post("/webhooks/stripe")
async def stripe_webhook(
    req: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationService = Depends(get_deferred_notifier),
):
    body = await req.body()
    try:
        event = gateway.construct_event(body, req.headers.get("stripe-signature"))
    except (SignatureError, ValidationError) as e:
        raise http_error(e) from e

    # the settlement path is blocking database work
    return await run_in_threadpool(_process, db, event, notifier)
