"""
API request and response models for the gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route
handlers map between the two.

Wire format is camelCase (accessToken, refreshToken, ...). Python code uses
snake_case attribute names; the alias generator bridges the two and
populate_by_name lets tests construct models either way.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from audit.models import AuditEvent
from auth.models import AccessTokenClaims, ClientInfo, OperatorAccount
from auth.session import SessionInfo

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Request-size bound only. The strength policy also caps the UTF-8 encoding
# at 72 bytes (bcrypt's input limit) and reports it as weak_secret.
_SECRET_MAX = 128


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _CamelFrozen(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(_Camel):
    """Request body for POST /api/v1/auth/login.

    The secret has no minimum length: every wrong attempt reaches the
    credential check and comes back as the same 401, never a 400 that
    reveals the strength policy.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    secret: str = Field(min_length=1, max_length=_SECRET_MAX)


class RefreshRequest(_Camel):
    """Request body for POST /api/v1/auth/refresh and POST /api/v1/auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class ChangePasswordRequest(_Camel):
    """Request body for PUT /api/v1/auth/change-password."""

    current_secret: str = Field(min_length=1, max_length=_SECRET_MAX)
    new_secret: str = Field(min_length=1, max_length=_SECRET_MAX)
    confirm_secret: str = Field(min_length=1, max_length=_SECRET_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class OperatorSummary(_CamelFrozen):
    id: str
    email: str
    name: str
    role: str

    @classmethod
    def from_account(cls, operator: OperatorAccount) -> "OperatorSummary":
        return cls(id=operator.id, email=operator.email, name=operator.display_name, role=operator.role)


class TokenPairResponse(_CamelFrozen):
    """Response for POST /api/v1/auth/refresh."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenPairResponse):
    """Response for POST /api/v1/auth/login."""

    operator: OperatorSummary


class EmptyResponse(_CamelFrozen):
    """`{}` -- logout and password change return no payload."""


class ProfileResponse(_CamelFrozen):
    """Response for GET /api/v1/auth/profile."""

    id: str
    email: str
    name: str
    role: str
    active: bool
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, operator: OperatorAccount) -> "ProfileResponse":
        return cls(
            id=operator.id,
            email=operator.email,
            name=operator.display_name,
            role=operator.role,
            active=operator.active,
            last_login_at=operator.last_login_at,
        )


class RevokeAllResponse(_CamelFrozen):
    """Response for POST /api/v1/auth/sessions/revoke-all."""

    revoked_count: int


class ValidateResponse(_CamelFrozen):
    """Response for GET /api/v1/auth/validate. Built from the token claims alone."""

    valid: bool = True
    id: str
    email: str
    role: str
    expires_at: datetime

    @classmethod
    def from_claims(cls, claims: AccessTokenClaims) -> "ValidateResponse":
        return cls(id=claims.owner_id, email=claims.email, role=claims.role, expires_at=claims.expires_at)


class RecentLogin(_CamelFrozen):
    at: datetime
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


class CurrentSession(_CamelFrozen):
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


class SessionInfoResponse(_CamelFrozen):
    """Response for GET /api/v1/auth/session-info."""

    active_sessions: int
    recent_logins: list[RecentLogin]
    current_session: CurrentSession

    @classmethod
    def build(cls, info: SessionInfo, client: ClientInfo) -> "SessionInfoResponse":
        return cls(
            active_sessions=info.active_sessions,
            recent_logins=[
                RecentLogin(at=e.created_at, client_ip=e.client_ip, user_agent=e.user_agent)
                for e in info.recent_logins
            ],
            current_session=CurrentSession(client_ip=client.ip, user_agent=client.user_agent),
        )


class AuditEventResponse(_CamelFrozen):
    """One row of GET /api/v1/audit/events."""

    id: str
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    old_values: Optional[dict] = None
    new_values: Optional[dict] = None
    actor_id: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        """Factory Method: the mapping lives with the output model, not in the route."""
        return cls(
            id=event.id or "",
            action=event.action.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            old_values=event.old_values,
            new_values=event.new_values,
            actor_id=event.actor_id,
            client_ip=event.client_ip,
            user_agent=event.user_agent,
            description=event.description,
            created_at=event.created_at,
        )


class AuditStatsResponse(_CamelFrozen):
    """Response for GET /api/v1/audit/stats: event count per action."""

    total: int
    by_action: dict[str, int]


class ErrorDetail(_CamelFrozen):
    """Machine-readable error payload."""

    code: str
    message: str
    detail: Optional[list[str]] = None
    retry_after: Optional[int] = None


class ErrorResponse(_CamelFrozen):
    """Top-level error envelope returned on 4xx/5xx responses."""

    error: ErrorDetail


class HealthResponse(_CamelFrozen):
    """Response for GET /api/v1/health."""

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
