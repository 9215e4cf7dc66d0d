from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement.api.deps import http_error
from settlement.core.errors import BookingNotFoundError
from settlement.db.session import get_db
from settlement.models.booking import Booking
from settlement.schemas.booking import BookingOut, TicketOut

router = APIRouter(tags=["bookings"])


@router.get("/public/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, db: Session = Depends(get_db)):
    """Status and amounts for the success page, which polls until the webhook lands."""
    b = db.get(Booking, booking_id)
    if not b:
        raise http_error(BookingNotFoundError(booking_id))
    return BookingOut(
        bookingId=b.id,
        bookingCode=b.booking_code,
        eventId=b.event_id,
        quantity=b.quantity,
        paymentStatus=b.payment_status,
        paymentMethod=b.payment_method,
        totalAmount=b.total_amount,
        voucherAmount=b.voucher_amount,
        stripeAmount=b.stripe_amount,
        shortfallAmount=b.shortfall_amount,
        holdExpiresAt=b.hold_expires_at.isoformat() if b.hold_expires_at else None,
        paidAt=b.paid_at.isoformat() if b.paid_at else None,
        tickets=[TicketOut(ticketCode=t.ticket_code, status=t.status) for t in b.tickets],
    )
