"""Exception types raised by the ytarticle client, webhook and realtime layers."""

from __future__ import annotations

from typing import Any


class RequestValidationError(ValueError):
    """Raised when user input is rejected locally, before any network call."""


class ApiError(RuntimeError):
    """Raised when the generation API returns an unexpected response or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body
        self.context = context or {}


class AuthenticationError(ApiError):
    """Raised on HTTP 401 or when no API token is configured."""

    def __init__(self, message: str = "Invalid API token", **kwargs: Any) -> None:
        kwargs.setdefault("status_code", 401)
        super().__init__(message, **kwargs)


class InsufficientFundsError(ApiError):
    """Raised on HTTP 402; carries the account's credit and balance figures."""

    def __init__(
        self,
        message: str = "Insufficient funds",
        *,
        current_credits: int = 0,
        current_balance: float = 0.0,
        minimum_balance: float = 0.30,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("status_code", 402)
        super().__init__(message, **kwargs)
        self.current_credits = current_credits
        self.current_balance = current_balance
        self.minimum_balance = minimum_balance

    @property
    def has_no_funds(self) -> bool:
        return self.current_credits == 0 and self.current_balance < self.minimum_balance


class RateLimitError(ApiError):
    """Raised on HTTP 429; ``retry_after`` is in seconds, or None when unknown."""

    def __init__(self, message: str = "Rate limit exceeded", *, retry_after: int | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("status_code", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class WebSocketError(RuntimeError):
    """Raised when the realtime channel fails to connect, read or send."""

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id


class WebhookError(RuntimeError):
    """Base error for rejected webhook deliveries."""

    status_code = 400


class SignatureError(WebhookError):
    """Raised when a webhook signature is missing or does not match the body."""

    status_code = 401


class PayloadError(WebhookError):
    """Raised when a webhook body is not valid JSON or has an unknown shape."""

    status_code = 400


class MaterializationError(RuntimeError):
    """Raised by article stores when an artifact cannot be created."""
