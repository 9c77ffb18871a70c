"""
Exception taxonomy for the posting engine.

Expected business conditions (bad input, missing records, stock
shortfalls) are surfaced verbatim to the caller. Internal consistency
failures (unbalanced vouchers) carry full detail for the log but map to
a generic message for end users.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional


GENERIC_FAILURE_MESSAGE = (
    "The transaction could not be completed. No changes were saved; "
    "please try again or contact support."
)


class PostingError(Exception):
    """Base class for every error raised by the engine."""

    user_visible = True

    @property
    def user_message(self) -> str:
        return str(self)


class ValidationError(PostingError):
    """Missing or malformed input; the caller can correct and retry."""

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message or f"{field} is required")


class NotFoundError(PostingError):
    """A referenced business, customer, vendor, product or invoice is absent."""

    def __init__(self, kind: str, key: Any) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind.capitalize()} not found: {key}")


class InsufficientStockError(PostingError):
    """Applying a stock movement would drive stock below zero."""

    def __init__(
        self,
        product_id: str,
        available: Decimal,
        requested: Decimal,
        line_index: Optional[int] = None,
        product_name: Optional[str] = None,
    ) -> None:
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.line_index = line_index
        self.product_name = product_name
        label = product_name or product_id
        where = f" (line {line_index + 1})" if line_index is not None else ""
        super().__init__(
            f"Insufficient stock for {label}{where}. "
            f"Available: {available}, Required: {requested}"
        )


class BalanceError(PostingError):
    """A voucher's debits and credits disagree. Always a calculation bug."""

    user_visible = False

    def __init__(
        self,
        voucher_ref: str,
        total_debit: Decimal,
        total_credit: Decimal,
        entries: Optional[list[Any]] = None,
    ) -> None:
        self.voucher_ref = voucher_ref
        self.total_debit = total_debit
        self.total_credit = total_credit
        self.entries = entries or []
        super().__init__(
            f"Voucher {voucher_ref} does not balance: "
            f"debit {total_debit} != credit {total_credit}"
        )

    @property
    def user_message(self) -> str:
        return GENERIC_FAILURE_MESSAGE


class DuplicateVoucherError(PostingError):
    """A voucher reference was posted twice."""

    def __init__(self, voucher_ref: str) -> None:
        self.voucher_ref = voucher_ref
        super().__init__(f"Voucher {voucher_ref} has already been posted")


class ExternalStoreError(PostingError):
    """The record store failed. Reads may be retried; writes never blindly."""

    user_visible = False

    def __init__(
        self, operation: str, detail: str = "", retryable: bool = True
    ) -> None:
        self.operation = operation
        self.retryable = retryable
        super().__init__(f"Store operation '{operation}' failed: {detail}")

    @property
    def user_message(self) -> str:
        return GENERIC_FAILURE_MESSAGE


class OrchestrationTimeout(PostingError):
    """The caller's deadline passed before all posting steps completed."""

    def __init__(self, label: str, seconds: float) -> None:
        self.label = label
        self.seconds = seconds
        super().__init__(
            f"{label} did not finish within {seconds:g}s; all changes were rolled back"
        )


def user_message(exc: BaseException) -> str:
    """Return the single actionable message to show an end user."""
    if isinstance(exc, PostingError):
        return exc.user_message
    return GENERIC_FAILURE_MESSAGE
