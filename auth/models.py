"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
session service do the work; these only own the domain shape.

Layer rule: no imports from api/, admission/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class OperatorAccount:
    """A privileged operator. Created out-of-band (CLI provisioning).

    email is stored normalized (stripped, lower-cased) and is unique.
    secret_hash is a bcrypt hash; the plaintext is never stored.
    Accounts are deactivated, never deleted, in normal operation.
    """

    id: str
    email: str
    secret_hash: str
    display_name: str
    role: str
    active: bool = True
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side record backing one outstanding refresh token.

    id is embedded in the signed token (jti claim). token_digest is the
    SHA-256 of the token string so a leaked table cannot be replayed.
    """

    id: str
    owner_id: str
    token_digest: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified contents of an access token. Never persisted."""

    owner_id: str
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenClaims:
    """Verified contents of a refresh token: who owns it and which record backs it."""

    owner_id: str
    record_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class ClientInfo:
    """Best-effort description of the caller, recorded on audit events."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    operator: OperatorAccount
