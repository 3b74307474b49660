from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeGuard


class ErrorKind(str, Enum):
    # Discovery
    WELL_KNOWN_INVALID_RESPONSE = "WELL_KNOWN_INVALID_RESPONSE"
    WELL_KNOWN_INVALID_BODY = "WELL_KNOWN_INVALID_BODY"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    # Session
    NO_STATE = "NO_STATE"
    BROKEN_SESSION_STATE = "BROKEN_SESSION_STATE"
    INCOMPLETE_SESSION = "INCOMPLETE_SESSION"
    INVALID_ID_TOKEN = "INVALID_ID_TOKEN"
    # Callback
    INVALID_STATE = "INVALID_STATE"
    TOKEN_EXCHANGE_FAILED = "TOKEN_EXCHANGE_FAILED"
    TOKEN_EXCHANGE_INVALID_BODY = "TOKEN_EXCHANGE_INVALID_BODY"
    # Refresh
    REFRESH_TOKEN_FAILED = "REFRESH_TOKEN_FAILED"
    REFRESH_TOKEN_INVALID_BODY = "REFRESH_TOKEN_INVALID_BODY"
    # Resource access
    REQUEST_FAILED_NON_OK_RESPONSE = "REQUEST_FAILED_NON_OK_RESPONSE"
    REQUEST_FAILED_INVALID_RESPONSE = "REQUEST_FAILED_INVALID_RESPONSE"
    REQUEST_FAILED_RESOURCE_NOT_FOUND = "REQUEST_FAILED_RESOURCE_NOT_FOUND"
    CREATE_FAILED_NON_OK_RESPONSE = "CREATE_FAILED_NON_OK_RESPONSE"
    CREATE_FAILED_INVALID_RESPONSE = "CREATE_FAILED_INVALID_RESPONSE"
    # Issuer
    UNKNOWN_ISSUER = "UNKNOWN_ISSUER"
    # Claims
    CLAIM_NOT_FOUND = "CLAIM_NOT_FOUND"
    CLAIM_INVALID = "CLAIM_INVALID"


@dataclass(frozen=True, slots=True)
class SmartError:
    """An expected failure, returned in place of a result value."""

    error: ErrorKind

    def __str__(self) -> str:
        return self.error.value


class InvariantViolation(RuntimeError):
    """Misuse of the library that must be fixed at integration time."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Invariant violation: {message}")


def is_error(value: Any) -> TypeGuard[SmartError]:
    return isinstance(value, SmartError)
