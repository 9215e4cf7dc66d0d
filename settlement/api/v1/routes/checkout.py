from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement.api.deps import get_checkout_config, get_deferred_notifier, get_gateway, http_error
from settlement.core.errors import SettlementError
from settlement.db.session import get_db
from settlement.schemas.checkout import CheckoutIn, CheckoutOut
from settlement.services.checkout_service import CheckoutRequest, CustomerInfo, checkout
from settlement.services.gateway import PaymentGateway
from settlement.services.notification_service import NotificationService
from settlement.services.settings_service import CheckoutConfig

router = APIRouter(tags=["checkout"])


@router.post("/public/checkout", response_model=CheckoutOut)
def create_checkout(
    body: CheckoutIn,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: NotificationService = Depends(get_deferred_notifier),
    config: CheckoutConfig = Depends(get_checkout_config),
):
    """Reserve tickets; voucher-only bookings settle here, others get a gateway URL."""
    req = CheckoutRequest(
        event_id=body.eventId,
        customer=CustomerInfo(
            name=body.customerInfo.name,
            email=body.customerInfo.email,
            phone=body.customerInfo.phone or "",
        ),
        quantity=body.quantity,
        voucher_code=(body.voucherCode or "").strip() or None,
    )
    try:
        result = checkout(db, req, gateway=gateway, config=config, notifier=notifier)
    except SettlementError as e:
        raise http_error(e) from e

    b = result.booking
    return CheckoutOut(
        bookingId=b.id,
        bookingCode=b.booking_code,
        paymentCompleted=result.payment_completed,
        redirectUrl=result.redirect_url,
        gatewayUrl=result.gateway_url,
        totalAmount=result.split.total,
        voucherAmount=result.split.voucher_amount,
        gatewayAmount=result.split.gateway_amount,
        paymentMethod=result.split.method.value,
    )
