from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement.core.errors import ConflictError, NotFoundError
from settlement.db.session import get_db
from settlement.schemas.voucher import (
    VoucherSummaryOut,
    VoucherValidateIn,
    VoucherValidateOut,
    VoucherWarningOut,
)
from settlement.services.voucher_service import validate_voucher

router = APIRouter(tags=["vouchers"])


@router.post("/public/vouchers/validate", response_model=VoucherValidateOut)
def validate(body: VoucherValidateIn, db: Session = Depends(get_db)):
    """Read-only check used by the checkout form; failures come back as ``valid: false``."""
    try:
        check = validate_voucher(db, body.code, body.amount, event_id=body.eventId)
    except (NotFoundError, ConflictError) as e:
        return VoucherValidateOut(valid=False, error=e.message, errorCode=e.code.value)

    v = check.voucher
    return VoucherValidateOut(
        valid=True,
        voucher=VoucherSummaryOut(
            code=v.code,
            currentBalance=v.current_balance,
            maxUsableAmount=check.max_usable_amount,
            expiryDate=v.expiry_date.isoformat() if v.expiry_date else None,
            eventId=v.event_id,
        ),
        warnings=[VoucherWarningOut(type=w.type, message=w.message) for w in check.warnings],
    )
