from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500/502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidInputError(ServiceError):
    """Request is malformed; a client error with no retry implied (400)."""
    status_code = 400
    error_code = "validation_error"


ValidationError = InvalidInputError


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NonceNotFoundError(AuthenticationError):
    """No live nonce matches; the client must request a new one."""

    def __init__(self, message: str = "invalid or expired nonce", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NonceExpiredError(AuthenticationError):
    """The stored nonce outlived its TTL and was discarded."""

    def __init__(self, message: str = "nonce expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSignatureError(AuthenticationError):
    """Signature did not recover to the claimed address."""

    def __init__(self, message: str = "signature verification failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate account or wrong session state (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many attempts, please try again later",
        *,
        retry_after: int = 0,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ProvisioningFailedError(ServerError):
    """The identity store could not find or create the backing user (502)."""
    status_code = 502

    def __init__(self, message: str = "account provisioning failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConnectionExhaustedError(ServiceError):
    """Push channel gave up reconnecting; fall back to polling session state."""
    status_code = 503
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "ValidationError",
    "AuthenticationError",
    "NonceNotFoundError",
    "NonceExpiredError",
    "InvalidSignatureError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ProvisioningFailedError",
    "ConnectionExhaustedError",
]
