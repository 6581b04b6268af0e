"""
auth/session.py -- SessionService: login, refresh, logout, revoke-all, password change.

SessionService is the only writer of operator accounts and refresh-token
records. It receives every collaborator by reference at construction
(explicit dependency graph, no lookups at call time):

    CredentialStore, TokenIssuer, RefreshTokenLedger, AuditRecorder, Database

Session lifecycle:
    Anonymous --login--> Authenticated(access, refresh)
              --refresh--> Rotated(access', refresh') --refresh--> ...
              --logout / revoke-all / password change--> Revoked

Transactional coupling:
  login            ledger insert + last_login_at in one transaction; the Login
                   audit event is non-critical and appended after commit.
  refresh          rotation + owner active check in one transaction; a
                   disabled owner rolls the rotation back.
  revoke-all       record deletion + Logout audit event in one transaction.
  password change  secret update + revoke-all + Update audit event in one
                   transaction. Any failure rolls back all three and surfaces
                   as StorageFailure; the caller is never told "success" with
                   an unwritten audit trail.

Error reporting: every failure is logged here with its precise cause;
core.errors decides what the caller is allowed to see.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from audit.models import AuditAction, AuditEvent
from audit.recorder import AuditRecorder
from auth.credentials import CredentialStore, check_secret_strength
from auth.ledger import RefreshTokenLedger
from auth.models import ClientInfo, LoginResult, OperatorAccount, TokenPair
from auth.tokens import TokenIssuer
from core.database import Database
from core.errors import (
    ConfirmMismatch,
    InvalidCredentials,
    InvalidCurrentSecret,
    NotFound,
    TokenError,
    TokenInvalid,
    TokenReused,
    ValidationFailed,
    WeakSecret,
)

logger = logging.getLogger("gatekeeper.session")

_ENTITY = "operator"


@dataclass(frozen=True)
class SessionInfo:
    active_sessions: int
    recent_logins: list[AuditEvent]


class SessionService:
    """Orchestrates the credential, token, ledger and audit components."""

    def __init__(
        self,
        *,
        db: Database,
        credentials: CredentialStore,
        issuer: TokenIssuer,
        ledger: RefreshTokenLedger,
        audit: AuditRecorder,
        reuse_revokes_all: bool = False,
    ) -> None:
        self._db = db
        self._credentials = credentials
        self._issuer = issuer
        self._ledger = ledger
        self._audit = audit
        self._reuse_revokes_all = reuse_revokes_all

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, email: str, secret: str, client: ClientInfo) -> LoginResult:
        """Authenticate and open a session. Raises InvalidCredentials (or AccountDisabled)."""
        try:
            operator = self._credentials.authenticate(email, secret)
        except InvalidCredentials as exc:
            logger.warning("Login failed for %s from %s: %s", _mask_email(email), client.ip, exc.message)
            raise

        with self._db.transaction() as conn:
            _record, refresh_token = self._ledger.issue(operator.id, conn=conn)
            self._credentials.record_login(operator.id, conn=conn)
        access_token = self._issuer.issue_access(operator.id, operator.email, operator.role)

        self._audit.append(
            AuditEvent(
                action=AuditAction.LOGIN,
                entity_type=_ENTITY,
                entity_id=operator.id,
                actor_id=operator.id,
                client_ip=client.ip,
                user_agent=client.user_agent,
                description="Operator logged in",
            )
        )
        logger.info("Login succeeded for operator %s from %s", operator.id, client.ip)
        refreshed = self._credentials.get_by_id(operator.id) or operator
        return LoginResult(tokens=TokenPair(access_token, refresh_token), operator=refreshed)

    def refresh(self, refresh_token: str, client: ClientInfo) -> TokenPair:
        """Exchange a refresh token for a new access/refresh pair (single use).

        Every token failure (invalid, expired, reused, disabled owner)
        propagates as a TokenError subclass; the API renders all of them as
        the same 401.
        """
        try:
            claims = self._issuer.verify_refresh(refresh_token)
            # The owner is read after the consuming DELETE, under its write
            # lock: a disable committed first is seen, a later one waits.
            with self._db.transaction() as conn:
                _record, new_refresh = self._ledger.rotate_verified(claims, refresh_token, conn=conn)
                operator = self._credentials.get_by_id(claims.owner_id, conn=conn)
                if operator is None or not operator.active:
                    raise TokenInvalid(f"refresh for missing or disabled operator {claims.owner_id}")
        except TokenReused as exc:
            logger.warning("Refresh token REUSE from %s: %s", client.ip, exc.message)
            if self._reuse_revokes_all:
                self._revoke_after_reuse(exc, client)
            raise
        except TokenError as exc:
            logger.warning("Refresh rejected from %s: %s", client.ip, exc.message)
            raise

        access_token = self._issuer.issue_access(operator.id, operator.email, operator.role)
        logger.info("Refresh token rotated for operator %s from %s", operator.id, client.ip)
        return TokenPair(access_token, new_refresh)

    def logout(self, refresh_token: str, owner_id: str, client: ClientInfo) -> bool:
        """End one session. Idempotent: an already-absent record is not an error.

        Returns True when a record was deleted (and a Logout event written).
        A token that fails signature verification is a malformed request
        (ValidationFailed), not an authentication failure: the caller is
        already authenticated by its access token.
        """
        try:
            claims = self._issuer.verify_refresh(refresh_token, allow_expired=True)
        except TokenError as exc:
            raise ValidationFailed(
                f"logout with unusable refresh token: {exc.message}",
                detail=["Invalid refresh token."],
            ) from exc

        if claims.owner_id != owner_id:
            logger.warning("Operator %s tried to log out a session of %s", owner_id, claims.owner_id)
            return False

        removed = self._ledger.revoke(claims.record_id, owner_id)
        if removed:
            self._audit.append(
                AuditEvent(
                    action=AuditAction.LOGOUT,
                    entity_type=_ENTITY,
                    entity_id=owner_id,
                    actor_id=owner_id,
                    client_ip=client.ip,
                    user_agent=client.user_agent,
                    description="Operator logged out",
                )
            )
        logger.info("Logout for operator %s (record removed=%s)", owner_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Critical transitions
    # ------------------------------------------------------------------

    def revoke_all_sessions(
        self,
        owner_id: str,
        client: ClientInfo,
        *,
        description: str = "all sessions revoked",
    ) -> int:
        """Delete every refresh record of ``owner_id``; audited in the same transaction."""
        with self._db.transaction() as conn:
            count = self._ledger.revoke_all(owner_id, conn=conn)
            self._audit.append(
                AuditEvent(
                    action=AuditAction.LOGOUT,
                    entity_type=_ENTITY,
                    entity_id=owner_id,
                    actor_id=owner_id,
                    client_ip=client.ip,
                    user_agent=client.user_agent,
                    new_values={"revokedCount": count},
                    description=description,
                ),
                conn=conn,
            )
        logger.info("Revoked %d sessions for operator %s", count, owner_id)
        return count

    def change_password(
        self,
        owner_id: str,
        current: str,
        new: str,
        confirm: str,
        client: ClientInfo,
    ) -> int:
        """Change the operator's secret and end every session. Returns sessions revoked."""
        if confirm != new:
            raise ConfirmMismatch("confirmation differs from new secret")
        try:
            self._credentials.verify_current_secret(owner_id, current)
        except InvalidCredentials as exc:
            logger.warning("Password change for %s rejected: %s", owner_id, exc.message)
            raise InvalidCurrentSecret(exc.message) from exc
        problems = check_secret_strength(new)
        if problems:
            raise WeakSecret(f"weak new secret for operator {owner_id}", detail=problems)

        with self._db.transaction() as conn:
            self._credentials.change_secret(owner_id, new, conn=conn)
            revoked = self._ledger.revoke_all(owner_id, conn=conn)
            self._audit.append(
                AuditEvent(
                    action=AuditAction.UPDATE,
                    entity_type=_ENTITY,
                    entity_id=owner_id,
                    actor_id=owner_id,
                    client_ip=client.ip,
                    user_agent=client.user_agent,
                    new_values={"sessionsRevoked": revoked},
                    description="Password changed",
                ),
                conn=conn,
            )
        logger.info("Password changed for operator %s; %d sessions revoked", owner_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Profile and provisioning
    # ------------------------------------------------------------------

    def get_profile(self, owner_id: str) -> OperatorAccount:
        operator = self._credentials.get_by_id(owner_id)
        if operator is None:
            raise NotFound(f"operator {owner_id} not found")
        return operator

    def session_info(self, owner_id: str, *, recent: int = 5) -> SessionInfo:
        """Active session count and the most recent logins of ``owner_id``."""
        return SessionInfo(
            active_sessions=self._ledger.count_active(owner_id),
            recent_logins=self._audit.list_events(actor_id=owner_id, action=AuditAction.LOGIN, limit=recent),
        )

    def provision_operator(
        self,
        email: str,
        secret: str,
        display_name: str,
        role: str | None = None,
        *,
        actor_id: str | None = None,
    ) -> OperatorAccount:
        """Create an operator account together with its Create audit event."""
        with self._db.transaction() as conn:
            operator = self._credentials.create_operator(email, secret, display_name, role, conn=conn)
            self._audit.append(
                AuditEvent(
                    action=AuditAction.CREATE,
                    entity_type=_ENTITY,
                    entity_id=operator.id,
                    actor_id=actor_id,
                    new_values={"email": operator.email, "role": operator.role, "displayName": operator.display_name},
                    description="Operator provisioned",
                ),
                conn=conn,
            )
        return operator

    def set_operator_active(self, operator_id: str, active: bool, *, actor_id: str | None = None) -> int:
        """Enable or disable an account. Disabling also revokes every session.

        Returns the number of sessions revoked. Raises NotFound for an
        unknown operator.
        """
        with self._db.transaction() as conn:
            operator = self._credentials.get_by_id(operator_id, conn=conn)
            if operator is None:
                raise NotFound(f"operator {operator_id} not found")
            self._credentials.set_active(operator_id, active, conn=conn)
            revoked = 0 if active else self._ledger.revoke_all(operator_id, conn=conn)
            self._audit.append(
                AuditEvent(
                    action=AuditAction.STATUS_CHANGE,
                    entity_type=_ENTITY,
                    entity_id=operator_id,
                    actor_id=actor_id,
                    old_values={"active": operator.active},
                    new_values={"active": active, "sessionsRevoked": revoked},
                    description="Operator enabled" if active else "Operator disabled",
                ),
                conn=conn,
            )
        return revoked

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _revoke_after_reuse(self, exc: TokenReused, client: ClientInfo) -> None:
        owner_id = exc.owner_id
        if owner_id is None:
            return
        self.revoke_all_sessions(owner_id, client, description="all sessions revoked after refresh token reuse")


def _mask_email(email: str) -> str:
    local, _, domain = email.strip().partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"
