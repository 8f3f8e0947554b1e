"""
Tests for phone and token helpers.
"""

import pytest

from src.utils.phone import InvalidPhoneError, mask_phone, normalize_phone
from src.utils.security import generate_otp, generate_session_token, mask_token


class TestNormalizePhone:
    @pytest.mark.parametrize("raw", [
        "254712345678",
        "+254712345678",
        "0712345678",
        "712345678",
        "+254 712 345 678",
        "0712-345-678",
    ])
    def test_accepted_forms(self, raw):
        assert normalize_phone(raw) == "254712345678"

    def test_safaricom_01_prefix(self):
        assert normalize_phone("0110123456") == "254110123456"

    @pytest.mark.parametrize("raw", ["", "12345", "25471234567", "2547123456789", "+1 415 555 0100", None])
    def test_rejected_forms(self, raw):
        with pytest.raises(InvalidPhoneError):
            normalize_phone(raw)

    def test_mask_phone(self):
        assert mask_phone("254712345678") == "********5678"
        assert mask_phone("") == "unknown"


class TestSecurityHelpers:
    def test_otp_is_six_digits(self):
        for _ in range(200):
            code = generate_otp()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999

    def test_session_token_length_and_uniqueness(self):
        tokens = {generate_session_token() for _ in range(50)}

        assert len(tokens) == 50
        assert all(len(token) == 64 for token in tokens)

    def test_session_token_minimum_entropy(self):
        with pytest.raises(ValueError):
            generate_session_token(16)

    def test_mask_token(self):
        token = "a" * 6 + "b" * 52 + "c" * 6
        assert mask_token(token) == "aaaaaa...cccccc"
        assert mask_token("short") == "***"
