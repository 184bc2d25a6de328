"""Marketplace error taxonomy.

Every failure the settlement core raises is a ``MarketplaceError``; the
service app renders them through a single exception handler as
``{"detail": ..., "code": ...}`` with the class's HTTP status.
"""

from typing import Any, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "MARKETPLACE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.detail:
            body["context"] = self.detail
        return body


class ValidationError(MarketplaceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(MarketplaceError):
    status_code = 404
    code = "NOT_FOUND"


class UnavailableError(MarketplaceError):
    """Product exists but is deleted or not visible."""

    status_code = 409
    code = "PRODUCT_UNAVAILABLE"


class InsufficientStockError(MarketplaceError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        message: str,
        *,
        product_id: Any = None,
        requested: Optional[int] = None,
        available: Optional[int] = None,
        **kwargs,
    ):
        detail = kwargs.pop("detail", None) or {}
        if product_id is not None:
            detail.setdefault("product_id", str(product_id))
        if requested is not None:
            detail.setdefault("requested", requested)
        if available is not None:
            detail.setdefault("available", available)
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(message, detail=detail, **kwargs)


class AmountMismatchError(MarketplaceError):
    status_code = 400
    code = "AMOUNT_MISMATCH"

    def __init__(self, message: str, *, expected: int, actual: int, **kwargs):
        self.expected = expected
        self.actual = actual
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("expected_kobo", expected)
        detail.setdefault("actual_kobo", actual)
        super().__init__(message, detail=detail, **kwargs)


class GatewayError(MarketplaceError):
    """Payment provider unreachable, timed out, or rejected the request."""

    status_code = 502
    code = "GATEWAY_ERROR"


class VerificationFailedError(MarketplaceError):
    status_code = 402
    code = "VERIFICATION_FAILED"


class InvalidSignatureError(MarketplaceError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class DuplicateProcessingError(MarketplaceError):
    """Raised when another caller already settled a reference.

    Callers treat this as success; it never reaches an HTTP response.
    """

    status_code = 200
    code = "DUPLICATE"


class TransactionAbortedError(MarketplaceError):
    status_code = 409
    code = "TRANSACTION_ABORTED"
