from settlement.models.audit_log import AuditLog
from settlement.models.booking import Booking
from settlement.models.customer import Customer
from settlement.models.email_log import EmailLog
from settlement.models.event import Event
from settlement.models.setting import Setting
from settlement.models.ticket import Ticket
from settlement.models.voucher import GiftVoucher, VoucherRedemption

__all__ = [
    "AuditLog",
    "Booking",
    "Customer",
    "EmailLog",
    "Event",
    "GiftVoucher",
    "Setting",
    "Ticket",
    "VoucherRedemption",
]
