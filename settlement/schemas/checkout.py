from pydantic import BaseModel, Field
from typing import Optional


class CustomerInfoIn(BaseModel):
    name: str = ""
    email: str  # plain str to allow .local and other dev domains
    phone: Optional[str] = ""


class CheckoutIn(BaseModel):
    eventId: str
    customerInfo: CustomerInfoIn
    quantity: int = Field(default=1, ge=1)
    voucherCode: Optional[str] = None


class CheckoutOut(BaseModel):
    bookingId: str
    bookingCode: str
    paymentCompleted: bool
    redirectUrl: Optional[str] = None
    gatewayUrl: Optional[str] = None
    totalAmount: int
    voucherAmount: int = 0
    gatewayAmount: int = 0
    paymentMethod: str
