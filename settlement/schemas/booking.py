from pydantic import BaseModel
from typing import List, Optional


class TicketOut(BaseModel):
    ticketCode: str
    status: str


class BookingOut(BaseModel):
    bookingId: str
    bookingCode: str
    eventId: str
    quantity: int
    paymentStatus: str
    paymentMethod: str
    totalAmount: int
    voucherAmount: int = 0
    stripeAmount: int = 0
    shortfallAmount: int = 0
    holdExpiresAt: Optional[str] = None
    paidAt: Optional[str] = None
    tickets: List[TicketOut] = []
