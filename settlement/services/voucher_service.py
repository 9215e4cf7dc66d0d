"""Voucher validation and the redemption ledger.

The ledger invariant ``sum(redemptions) + current_balance == original_amount``
holds because the balance only moves through ``redeem_voucher``, which
decrements it with a guarded UPDATE and appends the matching redemption row
in the same transaction.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.orm import Session

from settlement.core.clock import as_utc, utcnow
from settlement.core.errors import (
    CodeAllocationError,
    ValidationError,
    VoucherBalanceConflictError,
    VoucherEventMismatchError,
    VoucherExpiredError,
    VoucherInactiveError,
    VoucherNotFoundError,
    VoucherZeroBalanceError,
)
from settlement.db.conditional import execute_conditional
from settlement.domain.states import VoucherStatus, transition_guard
from settlement.models.voucher import GiftVoucher, VoucherRedemption
from settlement.services.audit_service import log_audit
from settlement.services.codes import MAX_CODE_ATTEMPTS, make_voucher_code

logger = structlog.get_logger(__name__)

DEFAULT_EXPIRY_DAYS = 365


@dataclass(frozen=True)
class VoucherWarning:
    type: str
    message: str


@dataclass(frozen=True)
class VoucherCheck:
    voucher: GiftVoucher
    max_usable_amount: int
    warnings: list[VoucherWarning] = field(default_factory=list)


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def get_voucher_by_code(db: Session, code: str) -> GiftVoucher | None:
    return db.query(GiftVoucher).filter(GiftVoucher.code == normalize_code(code)).first()


def validate_voucher(
    db: Session,
    code: str,
    requested_total: int | None,
    event_id: str | None = None,
    now: datetime | None = None,
) -> VoucherCheck:
    """Check a voucher can pay towards ``requested_total``.

    Checks run in a fixed order and the first failure wins: existence,
    status, expiry, balance, event scope. Without a ``requested_total`` (or
    with zero) the whole balance is reported as usable.

    Raises:
        VoucherNotFoundError, VoucherInactiveError, VoucherExpiredError,
        VoucherZeroBalanceError, VoucherEventMismatchError
    """
    if requested_total is not None and requested_total < 0:
        raise ValidationError("amount cannot be negative")
    now = now or utcnow()

    voucher = get_voucher_by_code(db, code)
    if not voucher:
        raise VoucherNotFoundError(normalize_code(code))
    if voucher.status != VoucherStatus.ACTIVE:
        raise VoucherInactiveError(voucher.status)
    if as_utc(voucher.expiry_date) <= now:
        raise VoucherExpiredError()
    if voucher.current_balance <= 0:
        raise VoucherZeroBalanceError()

    warnings: list[VoucherWarning] = []
    if voucher.event_id:
        if event_id and event_id != voucher.event_id:
            raise VoucherEventMismatchError(voucher.event_id)
        if not event_id:
            warnings.append(VoucherWarning("EVENT_SPECIFIC", "Voucher is only valid for one specific event"))

    if not requested_total:
        return VoucherCheck(voucher=voucher, max_usable_amount=voucher.current_balance, warnings=warnings)

    max_usable = min(voucher.current_balance, requested_total)
    if voucher.current_balance < requested_total:
        warnings.append(VoucherWarning(
            "PARTIAL_COVERAGE",
            f"Voucher covers {format_amount(max_usable)} of {format_amount(requested_total)}; "
            f"{format_amount(requested_total - max_usable)} remains to pay by card",
        ))
    elif voucher.current_balance > requested_total:
        warnings.append(VoucherWarning(
            "BALANCE_REMAINS",
            f"Balance exceeds this booking; {format_amount(voucher.current_balance - requested_total)} stays available",
        ))

    return VoucherCheck(voucher=voucher, max_usable_amount=max_usable, warnings=warnings)


def redeem_voucher(
    db: Session,
    voucher_id: str,
    booking_id: str,
    amount: int,
    *,
    allow_expired: bool = False,
    actor: str = "checkout",
) -> VoucherRedemption:
    """Take ``amount`` off the voucher and append the ledger row.

    ``allow_expired`` honours a voucher that expired between checkout and
    the gateway confirming a mixed payment.

    Raises:
        VoucherBalanceConflictError: balance or status no longer allows it.
    """
    if amount <= 0:
        raise ValidationError("redemption amount must be positive")

    usable = [VoucherStatus.ACTIVE.value]
    if allow_expired:
        usable.append(VoucherStatus.EXPIRED.value)

    stmt = (
        update(GiftVoucher)
        .where(
            GiftVoucher.id == voucher_id,
            GiftVoucher.status.in_(usable),
            GiftVoucher.current_balance >= amount,
        )
        .values(
            current_balance=GiftVoucher.current_balance - amount,
            status=case(
                (
                    and_(
                        GiftVoucher.current_balance == amount,
                        transition_guard(GiftVoucher.status, VoucherStatus.REDEEMED),
                    ),
                    VoucherStatus.REDEEMED.value,
                ),
                else_=GiftVoucher.status,
            ),
        )
    )
    if not execute_conditional(db, stmt, GiftVoucher, voucher_id):
        raise VoucherBalanceConflictError(amount)

    redemption = VoucherRedemption(
        id=str(uuid.uuid4()),
        voucher_id=voucher_id,
        booking_id=booking_id,
        amount_used=amount,
        redeemed_at=utcnow(),
    )
    db.add(redemption)
    db.flush()
    log_audit(db, actor=actor, action="voucher.redeemed", entity_type="voucher", entity_id=voucher_id,
              details={"booking_id": booking_id, "amount": amount})
    logger.info("voucher_redeemed", voucher_id=voucher_id, booking_id=booking_id, amount=amount)
    return redemption


def redeem_available(
    db: Session,
    voucher_id: str,
    booking_id: str,
    amount: int,
    *,
    allow_expired: bool = False,
    actor: str = "checkout",
    attempts: int = 3,
) -> int:
    """Redeem up to ``amount``, settling for whatever balance is left.

    Returns the amount actually redeemed (possibly 0). Used when the booking
    has already been charged for the rest and cannot be refused.
    """
    wanted = amount
    for _ in range(attempts):
        if wanted <= 0:
            return 0
        try:
            redeem_voucher(db, voucher_id, booking_id, wanted, allow_expired=allow_expired, actor=actor)
            return wanted
        except VoucherBalanceConflictError:
            balance = db.execute(
                select(GiftVoucher.current_balance).where(GiftVoucher.id == voucher_id)
            ).scalar_one_or_none()
            wanted = min(amount, balance or 0)
    return 0


def issue_voucher(
    db: Session,
    amount: int,
    *,
    expiry_days: int = DEFAULT_EXPIRY_DAYS,
    event_id: str | None = None,
    purchaser_name: str = "",
    purchaser_email: str = "",
    code: str | None = None,
    now: datetime | None = None,
) -> GiftVoucher:
    """Create an active voucher.

    A fresh GIFT-XXXX-XXXX code is drawn unless ``code`` is given; a given
    code that is already taken raises ValidationError.
    """
    if amount <= 0:
        raise ValidationError("voucher amount must be positive")
    now = now or utcnow()

    if code:
        code = normalize_code(code)
        if get_voucher_by_code(db, code):
            raise ValidationError(f"voucher code {code} already exists")
    else:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = make_voucher_code()
            if not db.query(GiftVoucher.id).filter(GiftVoucher.code == code).first():
                break
        else:
            raise CodeAllocationError("voucher code")

    voucher = GiftVoucher(
        id=str(uuid.uuid4()),
        code=code,
        original_amount=amount,
        current_balance=amount,
        status=VoucherStatus.ACTIVE.value,
        expiry_date=now + timedelta(days=expiry_days),
        event_id=event_id,
        purchaser_name=purchaser_name,
        purchaser_email=purchaser_email,
    )
    db.add(voucher)
    db.flush()
    return voucher


def verify_ledger(db: Session, voucher: GiftVoucher) -> bool:
    """True when redemptions plus balance add up to the original amount."""
    redeemed = db.execute(
        select(func.coalesce(func.sum(VoucherRedemption.amount_used), 0)).where(
            VoucherRedemption.voucher_id == voucher.id
        )
    ).scalar_one()
    return int(redeemed) + voucher.current_balance == voucher.original_amount


def expire_vouchers(db: Session, now: datetime | None = None) -> int:
    """Move active vouchers past their expiry date to expired. Caller commits."""
    now = now or utcnow()
    result = db.execute(
        update(GiftVoucher)
        .where(transition_guard(GiftVoucher.status, VoucherStatus.EXPIRED), GiftVoucher.expiry_date <= now)
        .values(status=VoucherStatus.EXPIRED.value),
        execution_options={"synchronize_session": False},
    )
    return result.rowcount
