from sqlalchemy import String, Integer, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
import uuid
from settlement.db.session import Base

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_code: Mapped[str] = mapped_column(String(20), unique=True, index=True)

    event_id: Mapped[str] = mapped_column(String(36), ForeignKey("events.id"), index=True)
    customer_id: Mapped[str] = mapped_column(String(36), ForeignKey("customers.id"), index=True)

    quantity: Mapped[int] = mapped_column(Integer)

    # minor units; total_amount == voucher_amount + stripe_amount + shortfall_amount once paid
    total_amount: Mapped[int] = mapped_column(Integer)
    voucher_amount: Mapped[int] = mapped_column(Integer, default=0)
    stripe_amount: Mapped[int] = mapped_column(Integer, default=0)
    shortfall_amount: Mapped[int] = mapped_column(Integer, default=0)  # deferred voucher part that could not be redeemed

    payment_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending, paid, failed, refunded
    payment_method: Mapped[str] = mapped_column(String(20), default="card")  # card, voucher, mixed

    voucher_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("gift_vouchers.id"), nullable=True)
    gateway_session_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    confirmation_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    tickets: Mapped[list["Ticket"]] = relationship(
        back_populates="booking", cascade="all, delete-orphan", order_by="Ticket.ticket_code"
    )
