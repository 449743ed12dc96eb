"""Domain errors raised by the core and mapped to HTTP responses by the routers."""

from fastapi import HTTPException, status


class LazStoreError(Exception):
    """Base class for recoverable domain rejections."""

    reason = "error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason


class PermissionDenied(LazStoreError):
    reason = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN


class IllegalTransition(LazStoreError):
    reason = "illegal_transition"
    status_code = status.HTTP_409_CONFLICT


class NotFound(LazStoreError):
    reason = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InsufficientStock(LazStoreError):
    reason = "insufficient_stock"
    status_code = status.HTTP_400_BAD_REQUEST


class EmptyCart(LazStoreError):
    reason = "empty_cart"
    status_code = status.HTTP_400_BAD_REQUEST


def to_http_exception(exc: LazStoreError) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code,
        detail={"error": exc.reason, "message": exc.message},
    )
