"""OTP codes and session tokens."""

import secrets

OTP_MIN = 100000
OTP_MAX = 999999


def generate_otp() -> str:
    """Return a 6-digit code drawn uniformly from [100000, 999999]."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def generate_session_token(num_bytes: int = 32) -> str:
    """
    Return an opaque hex session token.

    Args:
        num_bytes: Bytes of randomness; 32 bytes gives 256 bits

    Returns:
        Hex string of length 2 * num_bytes
    """
    if num_bytes < 32:
        raise ValueError(f"Session tokens need at least 32 bytes of randomness, got {num_bytes}")
    return secrets.token_hex(num_bytes)


def mask_token(token: str) -> str:
    """Show only the first and last six characters of a token."""
    if not token or len(token) <= 12:
        return "***"
    return f"{token[:6]}...{token[-6:]}"
