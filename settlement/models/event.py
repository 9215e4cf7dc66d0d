from sqlalchemy import String, Integer, DateTime, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
import uuid
from settlement.db.session import Base

class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("available_tickets >= 0", name="ck_events_available_non_negative"),
        CheckConstraint("available_tickets <= capacity", name="ck_events_available_le_capacity"),
        CheckConstraint("price >= 0", name="ck_events_price_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title: Mapped[str] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(40), default="", index=True)  # e.g. murder, escape; picks email template

    price: Mapped[int] = mapped_column(Integer)  # per ticket, minor units
    capacity: Mapped[int] = mapped_column(Integer)
    available_tickets: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String(20), default="draft", index=True)  # draft, active, soldout, cancelled
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
