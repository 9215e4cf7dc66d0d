"""Decide how a booking total is paid.

Pure function, no I/O. Amounts are integers in minor units so
``voucher_amount + gateway_amount == total`` holds exactly.
"""

from dataclasses import dataclass

from settlement.core.errors import ValidationError
from settlement.domain.states import PaymentMethod


@dataclass(frozen=True)
class PaymentSplit:
    total: int
    voucher_amount: int
    gateway_amount: int
    method: PaymentMethod

    @property
    def requires_gateway(self) -> bool:
        """False means the booking settles synchronously at checkout."""
        return self.gateway_amount > 0


def split_payment(total: int, voucher_balance: int | None = None) -> PaymentSplit:
    if total < 0:
        raise ValidationError("total cannot be negative")
    if voucher_balance is None:
        return PaymentSplit(total=total, voucher_amount=0, gateway_amount=total, method=PaymentMethod.CARD)
    if voucher_balance < 0:
        raise ValidationError("voucher balance cannot be negative")
    if voucher_balance >= total:
        return PaymentSplit(total=total, voucher_amount=total, gateway_amount=0, method=PaymentMethod.VOUCHER)
    return PaymentSplit(
        total=total,
        voucher_amount=voucher_balance,
        gateway_amount=total - voucher_balance,
        method=PaymentMethod.MIXED,
    )
