"""Human-presentable codes for bookings, tickets and vouchers.

Uniqueness is enforced by unique constraints; callers retry on collision.
"""

import secrets

# no 0/O or 1/I, codes get read out over the phone
_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_VOUCHER_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

MAX_CODE_ATTEMPTS = 10


def _random_chunk(n: int, alphabet: str = _ALPHABET) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(n))


def make_booking_code() -> str:
    return "EVB-" + _random_chunk(8)


def make_ticket_code(booking_code: str, index: int) -> str:
    return f"{booking_code}-T{index + 1:02d}"


def make_voucher_code() -> str:
    return f"GIFT-{_random_chunk(4, _VOUCHER_ALPHABET)}-{_random_chunk(4, _VOUCHER_ALPHABET)}"
