"""
auth/tokens.py -- TokenIssuer: signed access and refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Two token classes, two keys. Access tokens
       are signed with the access key, refresh tokens with the refresh key,
       and each carries a "typ" claim that verification checks. Compromise of
       one key cannot mint tokens of the other class, and a refresh token
       presented as a bearer token fails signature verification.

  Stateless: verification never consults the refresh-token ledger. Whether
       a refresh token is still live is decided one layer up, by
       RefreshTokenLedger.rotate().

  Failures raise TokenExpired or TokenInvalid (core.errors). The route layer
       renders both as the same generic 401.

Layer rule: no imports from api/, admission/, or audit/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from auth.models import AccessTokenClaims, RefreshTokenClaims
from core.config import Settings
from core.database import utcnow
from core.errors import TokenExpired, TokenInvalid

logger = logging.getLogger("gatekeeper.tokens")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"


class TokenIssuer:
    """Create and verify access / refresh tokens.

    Usage:
        issuer = TokenIssuer.from_settings(settings)
        token = issuer.issue_access(owner_id, email, role)
        claims = issuer.verify_access(token)
    """

    def __init__(
        self,
        *,
        access_key: str,
        refresh_key: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if access_key == refresh_key:
            raise ValueError("access and refresh tokens must use different signing keys")
        self._access_key = access_key
        self._refresh_key = refresh_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(seconds=access_ttl_seconds)
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utcnow) -> "TokenIssuer":
        return cls(
            access_key=settings.access_secret_key,
            refresh_key=settings.refresh_secret_key,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            access_ttl_seconds=settings.access_token_expire_seconds,
            refresh_ttl_seconds=settings.refresh_token_expire_seconds,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access(self, owner_id: str, email: str, role: str) -> str:
        """Sign a short-lived access token for an authenticated operator."""
        issued_at = self._clock()
        payload = {
            "sub": owner_id,
            "email": email,
            "role": role,
            "typ": _ACCESS,
            "iat": issued_at,
            "exp": issued_at + self.access_ttl,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._access_key, algorithm=_ALGORITHM)

    def verify_access(self, token: str) -> AccessTokenClaims:
        payload = self._decode(token, self._access_key, _ACCESS)
        if "email" not in payload or "role" not in payload:
            raise TokenInvalid("access token is missing identity claims")
        return AccessTokenClaims(
            owner_id=payload["sub"],
            email=payload["email"],
            role=payload["role"],
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def refresh_expiry(self, issued_at: datetime) -> datetime:
        return issued_at + self.refresh_ttl

    def issue_refresh(self, owner_id: str, record_id: str, *, issued_at: datetime, expires_at: datetime) -> str:
        """Sign a refresh token embedding the ledger record id (jti).

        The ledger passes the record's own timestamps so token expiry and
        record expiry agree.
        """
        payload = {
            "sub": owner_id,
            "jti": record_id,
            "typ": _REFRESH,
            "iat": issued_at,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        return jwt.encode(payload, self._refresh_key, algorithm=_ALGORITHM)

    def verify_refresh(self, token: str, *, allow_expired: bool = False) -> RefreshTokenClaims:
        """Verify signature, class and (unless allow_expired) expiry.

        allow_expired exists for logout, which must be able to identify and
        delete a record whose token has just lapsed.
        """
        payload = self._decode(token, self._refresh_key, _REFRESH, verify_exp=not allow_expired)
        if not payload.get("jti"):
            raise TokenInvalid("refresh token is missing its record id")
        return RefreshTokenClaims(
            owner_id=payload["sub"],
            record_id=payload["jti"],
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _decode(self, token: str, key: str, token_type: str, *, verify_exp: bool = True) -> dict:
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": verify_exp},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired(f"{token_type} token expired") from exc
        except JWTError as exc:
            raise TokenInvalid(f"{token_type} token rejected: {exc}") from exc
        if payload.get("typ") != token_type or not payload.get("sub"):
            raise TokenInvalid(f"token is not a {token_type} token")
        if "iat" not in payload or "exp" not in payload:
            raise TokenInvalid(f"{token_type} token is missing time claims")
        return payload


def _from_timestamp(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)
