from sqlalchemy import String, Integer, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
import uuid
from settlement.db.session import Base

class GiftVoucher(Base):
    __tablename__ = "gift_vouchers"
    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_vouchers_balance_non_negative"),
        CheckConstraint("current_balance <= original_amount", name="ck_vouchers_balance_le_original"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True)  # GIFT-XXXX-XXXX

    original_amount: Mapped[int] = mapped_column(Integer)
    current_balance: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)  # active, redeemed, expired, cancelled
    expiry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    # optional scoping to a single event
    event_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("events.id"), nullable=True, index=True)

    purchaser_name: Mapped[str] = mapped_column(String(200), default="")
    purchaser_email: Mapped[str] = mapped_column(String(320), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    redemptions: Mapped[list["VoucherRedemption"]] = relationship(
        back_populates="voucher", order_by="VoucherRedemption.redeemed_at"
    )


class VoucherRedemption(Base):
    """Append-only ledger row. Never updated or deleted."""

    __tablename__ = "voucher_redemptions"
    __table_args__ = (
        CheckConstraint("amount_used > 0", name="ck_redemptions_amount_positive"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    voucher_id: Mapped[str] = mapped_column(String(36), ForeignKey("gift_vouchers.id"), index=True)
    # one redemption per booking
    booking_id: Mapped[str] = mapped_column(String(36), ForeignKey("bookings.id"), unique=True)
    amount_used: Mapped[int] = mapped_column(Integer)
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    voucher: Mapped[GiftVoucher] = relationship(back_populates="redemptions")
