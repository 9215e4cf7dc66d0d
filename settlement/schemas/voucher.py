from pydantic import BaseModel, Field
from typing import List, Optional


class VoucherValidateIn(BaseModel):
    code: str
    eventId: Optional[str] = None
    amount: Optional[int] = Field(None, ge=0)  # minor units


class VoucherWarningOut(BaseModel):
    type: str
    message: str


class VoucherSummaryOut(BaseModel):
    code: str
    currentBalance: int
    maxUsableAmount: int
    expiryDate: Optional[str] = None
    eventId: Optional[str] = None


class VoucherValidateOut(BaseModel):
    valid: bool
    voucher: Optional[VoucherSummaryOut] = None
    warnings: List[VoucherWarningOut] = []
    error: Optional[str] = None
    errorCode: Optional[str] = None
