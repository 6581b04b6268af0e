"""
core/errors.py -- Error taxonomy shared by every gatekeeper component.

Each exception carries the HTTP status, the stable machine-readable code and
the public message the API layer renders. The internal message (the first
constructor argument) is for logs only and never reaches a response body.

Collapsing rules:
  InvalidCredentials and AccountDisabled share one public code and message,
  so a caller cannot tell "unknown email" from "wrong password" from
  "disabled account".

  TokenExpired, TokenInvalid and TokenReused share the generic "unauthorized"
  response. They stay distinct classes so logs and audit can tell them apart.

Layer rule: core/ is the kernel. No imports from api/, auth/, admission/, audit/.
"""

from __future__ import annotations


class GatekeeperError(Exception):
    """Base class for every expected, mapped failure."""

    status_code: int = 400
    code: str = "error"
    public_message: str = "Request failed."

    def __init__(self, message: str = "", *, detail: list[str] | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        # Safe-to-expose detail (e.g. unmet secret rules). Never internal state.
        self.detail = detail or []


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class InvalidCredentials(GatekeeperError):
    status_code = 401
    code = "invalid_credentials"
    public_message = "Invalid email or password."


class AccountDisabled(InvalidCredentials):
    """Disabled account. Rendered exactly like InvalidCredentials."""


class TokenError(GatekeeperError):
    status_code = 401
    code = "unauthorized"
    public_message = "Invalid or expired token."


class TokenExpired(TokenError):
    pass


class TokenInvalid(TokenError):
    pass


class TokenReused(TokenError):
    """An already-rotated refresh token was presented again (theft signal)."""

    def __init__(self, message: str = "", *, owner_id: str | None = None) -> None:
        super().__init__(message)
        self.owner_id = owner_id


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


class ConfirmMismatch(GatekeeperError):
    status_code = 400
    code = "confirm_mismatch"
    public_message = "Password confirmation does not match the new password."


class InvalidCurrentSecret(GatekeeperError):
    status_code = 400
    code = "invalid_current_secret"
    public_message = "Current password is incorrect."


class WeakSecret(GatekeeperError):
    status_code = 400
    code = "weak_secret"
    public_message = "Password does not meet security requirements."


# ---------------------------------------------------------------------------
# Request handling
# ---------------------------------------------------------------------------


class ValidationFailed(GatekeeperError):
    status_code = 400
    code = "validation_failed"
    public_message = "Request validation failed."


class Forbidden(GatekeeperError):
    status_code = 403
    code = "forbidden"
    public_message = "Insufficient privileges."


class NotFound(GatekeeperError):
    status_code = 404
    code = "not_found"
    public_message = "Resource not found."


class RateLimited(GatekeeperError):
    status_code = 429
    code = "rate_limited"
    public_message = "Too many requests. Please try again later."

    def __init__(self, message: str = "", *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageFailure(GatekeeperError):
    """The backing store failed or timed out. The transport layer may retry."""

    status_code = 500
    code = "storage_failure"
    public_message = "The operation could not be completed. Please retry."
