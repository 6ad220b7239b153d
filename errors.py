"""Application error taxonomy.

Every error carries the HTTP status it maps to and an optional ``extra``
payload merged into the JSON body by the handlers registered in ``main``.
"""
from __future__ import annotations

from typing import Any, Optional


class AppError(Exception):
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"success": False, "error": self.message, **self.extra}


class AuthenticationRequired(AppError):
    status_code = 401
    default_message = "Please login first"


class ValidationError(AppError):
    status_code = 400
    default_message = "Invalid request"


class InvalidTransition(ValidationError):
    status_code = 409

    def __init__(self, current: Any, requested: Any) -> None:
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            f"Cannot move proposal from '{current_value}' to '{requested_value}'",
            currentStatus=current_value,
            requestedStatus=requested_value,
        )


class SignupClosed(AppError):
    status_code = 403
    default_message = "This application is for single user only. Please login."


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class ConfigurationError(AppError):
    status_code = 500
    default_message = "Upwork API not configured"


class UpstreamUnavailable(AppError):
    status_code = 502
    default_message = "Upstream service unavailable"


class UpstreamSchemaMismatch(AppError):
    status_code = 502
    default_message = "Unexpected response from upstream service"


class RequiresReconnect(AppError):
    status_code = 401
    default_message = "Upwork authorization expired. Please reconnect Upwork."

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["requiresReconnect"] = True
        return payload


class TokenExpired(RequiresReconnect):
    default_message = "Upwork access token expired. Please reconnect Upwork."


class TokenExchangeError(AppError):
    status_code = 400
    default_message = "Failed to exchange authorization code for token"

    def __init__(self, message: Optional[str] = None, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status


class InvalidOAuthState(AppError):
    status_code = 400
    default_message = "Invalid or expired OAuth state. Please start the connection again."


class PersistenceError(AppError):
    status_code = 500
    default_message = "Database error"
