from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass
class SyncError(Exception):
    """Canonical error type for misuse of the sync engine's collaborators."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


# Substrings (lowercase) that mark a wallet-side cancel rather than a fault.
USER_REJECTION_PATTERNS = ("rejected", "cancelled", "denied", "user refused")


def error_message(error: BaseException | Any) -> str:
    if isinstance(error, BaseException) and error.args and isinstance(error.args[0], str):
        return error.args[0]
    return str(error)


def is_user_rejection_error(error: BaseException | Any) -> bool:
    """True when the write failed because the user declined it in the wallet."""
    message = error_message(error).lower()
    return any(p in message for p in USER_REJECTION_PATTERNS)


class ErrorCategory(str, Enum):
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INDEXER_UNAVAILABLE = "INDEXER_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    CONTRACT_CALL_FAILED = "CONTRACT_CALL_FAILED"
    UNKNOWN = "UNKNOWN"


_USER_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.SERVICE_UNAVAILABLE: "Access control service is not available. Please try reloading the contract.",
    ErrorCategory.INDEXER_UNAVAILABLE: "The data indexer is temporarily unavailable. Some information may be incomplete.",
    ErrorCategory.NETWORK_ERROR: "Network error occurred. Please check your connection and try again.",
    ErrorCategory.CONTRACT_CALL_FAILED: "Unable to retrieve data from this contract. The contract may have been updated.",
}

_TITLES: Dict[ErrorCategory, str] = {
    ErrorCategory.SERVICE_UNAVAILABLE: "Service Unavailable",
    ErrorCategory.INDEXER_UNAVAILABLE: "Data Service Unavailable",
    ErrorCategory.NETWORK_ERROR: "Network Error",
    ErrorCategory.CONTRACT_CALL_FAILED: "Contract Data Unavailable",
}


@dataclass(frozen=True)
class ErrorMeta:
    category: ErrorCategory
    title: str
    description: str
    can_retry: bool
    has_partial_data: bool


class DataError(Exception):
    """Read-side failure with a category and a user-facing message."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        *,
        original_error: Optional[BaseException] = None,
        can_retry: bool = True,
        has_partial_data: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.original_error = original_error
        self.can_retry = can_retry
        self.has_partial_data = has_partial_data

    def user_message(self) -> str:
        msg = _USER_MESSAGES.get(self.category)
        if msg is not None:
            return msg
        return self.message or "An unexpected error occurred. Please try again."

    def title(self) -> str:
        return _TITLES.get(self.category, "Something Went Wrong")

    def meta(self) -> ErrorMeta:
        return ErrorMeta(
            category=self.category,
            title=self.title(),
            description=self.user_message(),
            can_retry=self.can_retry,
            has_partial_data=self.has_partial_data,
        )


def categorize_error(error: BaseException) -> ErrorCategory:
    if isinstance(error, DataError):
        return error.category

    message = error_message(error).lower()

    if "service not available" in message or "access control service" in message:
        return ErrorCategory.SERVICE_UNAVAILABLE

    if "indexer" in message or "rpc" in message or "service unavailable" in message:
        return ErrorCategory.INDEXER_UNAVAILABLE

    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK_ERROR
    for p in ("network", "fetch", "timeout", "connection", "offline"):
        if p in message:
            return ErrorCategory.NETWORK_ERROR

    for p in (
        "revert",
        "execution failed",
        "call failed",
        "contract error",
        "execution reverted",
        "unable to fetch",
    ):
        if p in message:
            return ErrorCategory.CONTRACT_CALL_FAILED

    return ErrorCategory.UNKNOWN


def _has_partial_data(category: ErrorCategory) -> bool:
    return category in {ErrorCategory.INDEXER_UNAVAILABLE, ErrorCategory.CONTRACT_CALL_FAILED}


def get_error_meta(error: BaseException) -> ErrorMeta:
    if isinstance(error, DataError):
        return error.meta()
    category = categorize_error(error)
    tmp = DataError(
        error_message(error),
        category,
        original_error=error,
        has_partial_data=_has_partial_data(category),
    )
    return tmp.meta()


def wrap_error(error: BaseException | Any, context: str) -> DataError:
    """Wrap any read failure as a DataError naming what was being fetched."""
    if isinstance(error, DataError):
        return error

    original = error if isinstance(error, BaseException) else None
    category = categorize_error(original) if original is not None else ErrorCategory.UNKNOWN

    return DataError(
        f"Unable to fetch {context}: {error_message(error)}",
        category,
        original_error=original,
        can_retry=category != ErrorCategory.SERVICE_UNAVAILABLE,
        has_partial_data=_has_partial_data(category),
    )
