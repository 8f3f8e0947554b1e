# Utilities module

from .phone import InvalidPhoneError, mask_phone, normalize_phone
from .security import generate_otp, generate_session_token, mask_token

__all__ = [
    "InvalidPhoneError",
    "generate_otp",
    "generate_session_token",
    "mask_phone",
    "mask_token",
    "normalize_phone",
]
