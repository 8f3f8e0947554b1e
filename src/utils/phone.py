"""
Phone number helpers.

Phone numbers are the natural login key, so every number is reduced to the
canonical Kenyan MSISDN form (254XXXXXXXXX) before it reaches the services.
"""

import re

_NON_DIGITS = re.compile(r"\D")
_CANONICAL = re.compile(r"^254\d{9}$")


class InvalidPhoneError(ValueError):
    """Raised when a phone number cannot be normalised."""
    pass


def normalize_phone(raw: str) -> str:
    """
    Normalise a Kenyan phone number to 254XXXXXXXXX.

    Accepts +254..., 254..., 07.../01... and bare nine-digit local numbers.

    Raises:
        InvalidPhoneError: If the result is not 254 followed by nine digits
    """
    if raw is None:
        raise InvalidPhoneError("Phone number is required")

    digits = _NON_DIGITS.sub("", str(raw))

    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9:
        digits = "254" + digits

    if not _CANONICAL.match(digits):
        raise InvalidPhoneError("Invalid phone number format. Must be a valid Kenyan number.")

    return digits


def mask_phone(phone: str) -> str:
    """Mask all but the last four digits, for logs."""
    if not phone:
        return "unknown"
    if len(phone) <= 4:
        return "*" * len(phone)
    return "*" * (len(phone) - 4) + phone[-4:]
