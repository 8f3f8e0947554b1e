"""
Error taxonomy shared by the storage layer, the services and the routes.

Every service entry point either returns its typed result or raises exactly
one ServiceError. The kind is transport-agnostic; the HTTP mapping lives in
src.api.errors.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    ALREADY_VERIFIED = "already_verified"
    UNVERIFIED = "unverified"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"
    INSUFFICIENT_TOKENS = "insufficient_tokens"
    DISPATCH_FAILED = "dispatch_failed"
    INTERNAL = "internal"


class ServiceError(Exception):
    """Base exception for auth, ledger and payment operations."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.kind.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(ServiceError):
    kind = ErrorKind.ALREADY_EXISTS


class AlreadyVerifiedError(ServiceError):
    kind = ErrorKind.ALREADY_VERIFIED


class UnverifiedError(ServiceError):
    kind = ErrorKind.UNVERIFIED


class InvalidCodeError(ServiceError):
    kind = ErrorKind.INVALID_CODE


class ExpiredError(ServiceError):
    kind = ErrorKind.EXPIRED


class InsufficientTokensError(ServiceError):
    """Raised when a balance is below the price of the requested action."""

    kind = ErrorKind.INSUFFICIENT_TOKENS

    def __init__(self, required: int, balance: int, action: str = "this action"):
        super().__init__(
            f"Insufficient tokens for {action}: {required} required, {balance} available. "
            "Please purchase tokens to continue.",
            details={"required": required, "balance": balance, "action": action},
        )
        self.required = required
        self.balance = balance


class DispatchFailedError(ServiceError):
    kind = ErrorKind.DISPATCH_FAILED


class StorageError(ServiceError):
    """Backing store failure not attributable to caller input."""

    kind = ErrorKind.INTERNAL
