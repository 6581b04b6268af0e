"""
tests/test_session.py -- Unit tests for auth.session.SessionService.

Covers:
  - login: token pair, last_login_at, exactly one Login audit event
  - refresh: rotation, reuse detection, disabled owner, optional revoke-all on reuse
  - logout: idempotent, owner-checked, audited only when a record is removed
  - revoke-all and password change: state change + audit event are atomic
  - provisioning and enable/disable are audited
  - session_info: active session count and the five most recent logins
"""

from __future__ import annotations

import pytest

from audit.models import AuditAction
from auth.models import ClientInfo
from auth.session import SessionService
from core.database import audit_events
from core.errors import (
    ConfirmMismatch,
    InvalidCredentials,
    InvalidCurrentSecret,
    NotFound,
    StorageFailure,
    TokenInvalid,
    TokenReused,
    ValidationFailed,
    WeakSecret,
)

SECRET = "Corr3ct!Horse"
NEW_SECRET = "Brand!New2Secret"
CLIENT = ClientInfo(ip="203.0.113.7", user_agent="pytest")


class TestLogin:
    def test_login_opens_session(self, services, operator) -> None:
        result = services.sessions.login(operator.email, SECRET, CLIENT)
        claims = services.issuer.verify_access(result.tokens.access_token)
        assert claims.owner_id == operator.id
        assert result.operator.last_login_at is not None
        assert services.ledger.count_for_owner(operator.id) == 1

    def test_login_writes_one_audit_event(self, services, operator) -> None:
        services.sessions.login(operator.email, SECRET, CLIENT)
        [event] = services.audit.list_events(action=AuditAction.LOGIN)
        assert event.actor_id == operator.id
        assert event.client_ip == "203.0.113.7"
        assert event.user_agent == "pytest"

    def test_failed_login_writes_nothing(self, services, operator) -> None:
        with pytest.raises(InvalidCredentials):
            services.sessions.login(operator.email, "Wr0ng!Horse", CLIENT)
        assert services.audit.count(action=AuditAction.LOGIN) == 0
        assert services.ledger.count_for_owner(operator.id) == 0

    def test_login_survives_audit_outage(self, services, database, operator) -> None:
        """The Login event is non-critical: the session still opens."""
        audit_events.drop(database.engine)
        result = services.sessions.login(operator.email, SECRET, CLIENT)
        assert result.tokens.refresh_token


class TestRefresh:
    def test_refresh_rotates(self, services, operator) -> None:
        first = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        second = services.sessions.refresh(first.refresh_token, CLIENT)
        assert second.refresh_token != first.refresh_token
        assert services.issuer.verify_access(second.access_token).owner_id == operator.id
        assert services.ledger.count_for_owner(operator.id) == 1

    def test_reuse_detected(self, services, operator) -> None:
        first = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        second = services.sessions.refresh(first.refresh_token, CLIENT)
        with pytest.raises(TokenReused):
            services.sessions.refresh(first.refresh_token, CLIENT)
        # Default policy: the legitimate successor keeps working.
        services.sessions.refresh(second.refresh_token, CLIENT)

    def test_reuse_revokes_all_when_enabled(self, services, database, operator) -> None:
        hardened = SessionService(
            db=database,
            credentials=services.credentials,
            issuer=services.issuer,
            ledger=services.ledger,
            audit=services.audit,
            reuse_revokes_all=True,
        )
        first = hardened.login(operator.email, SECRET, CLIENT).tokens
        second = hardened.refresh(first.refresh_token, CLIENT)
        with pytest.raises(TokenReused):
            hardened.refresh(first.refresh_token, CLIENT)
        assert services.ledger.count_for_owner(operator.id) == 0
        with pytest.raises(TokenInvalid):
            hardened.refresh(second.refresh_token, CLIENT)

    def test_disabled_owner_cannot_refresh(self, services, operator) -> None:
        tokens = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        services.credentials.set_active(operator.id, False)
        with pytest.raises(TokenInvalid):
            services.sessions.refresh(tokens.refresh_token, CLIENT)

    def test_disabled_owner_rolls_rotation_back(self, services, operator) -> None:
        """The owner check shares the rotation transaction: nothing is consumed."""
        tokens = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        claims = services.issuer.verify_refresh(tokens.refresh_token)
        services.credentials.set_active(operator.id, False)
        with pytest.raises(TokenInvalid):
            services.sessions.refresh(tokens.refresh_token, CLIENT)
        assert services.ledger.get(claims.record_id) is not None
        assert services.ledger.count_for_owner(operator.id) == 1

        services.credentials.set_active(operator.id, True)
        assert services.sessions.refresh(tokens.refresh_token, CLIENT).refresh_token

    def test_access_token_is_not_accepted(self, services, operator) -> None:
        tokens = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        with pytest.raises(TokenInvalid):
            services.sessions.refresh(tokens.access_token, CLIENT)


class TestLogout:
    def test_logout_removes_record(self, services, operator) -> None:
        tokens = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        assert services.sessions.logout(tokens.refresh_token, operator.id, CLIENT) is True
        assert services.ledger.count_for_owner(operator.id) == 0
        assert services.audit.count(action=AuditAction.LOGOUT) == 1
        with pytest.raises(TokenInvalid):
            services.sessions.refresh(tokens.refresh_token, CLIENT)

    def test_logout_is_idempotent(self, services, operator) -> None:
        tokens = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        services.sessions.logout(tokens.refresh_token, operator.id, CLIENT)
        assert services.sessions.logout(tokens.refresh_token, operator.id, CLIENT) is False
        assert services.audit.count(action=AuditAction.LOGOUT) == 1

    def test_cannot_log_out_someone_else(self, services, operator) -> None:
        tokens = services.sessions.login(operator.email, SECRET, CLIENT).tokens
        assert services.sessions.logout(tokens.refresh_token, "other-operator", CLIENT) is False
        assert services.ledger.count_for_owner(operator.id) == 1

    def test_garbage_token_is_a_validation_error(self, services, operator) -> None:
        with pytest.raises(ValidationFailed):
            services.sessions.logout("garbage", operator.id, CLIENT)


class TestRevokeAll:
    def test_revokes_every_session(self, services, operator) -> None:
        for _ in range(3):
            services.sessions.login(operator.email, SECRET, CLIENT)
        assert services.sessions.revoke_all_sessions(operator.id, CLIENT) == 3
        assert services.ledger.count_for_owner(operator.id) == 0
        [event] = services.audit.list_events(action=AuditAction.LOGOUT)
        assert event.new_values == {"revokedCount": 3}

    def test_rolls_back_without_audit(self, services, database, operator) -> None:
        services.sessions.login(operator.email, SECRET, CLIENT)
        audit_events.drop(database.engine)
        with pytest.raises(StorageFailure):
            services.sessions.revoke_all_sessions(operator.id, CLIENT)
        assert services.ledger.count_for_owner(operator.id) == 1


class TestChangePassword:
    def test_change_password_revokes_and_audits_once(self, services, operator) -> None:
        for _ in range(2):
            services.sessions.login(operator.email, SECRET, CLIENT)
        revoked = services.sessions.change_password(operator.id, SECRET, NEW_SECRET, NEW_SECRET, CLIENT)

        assert revoked == 2
        assert services.ledger.count_for_owner(operator.id) == 0
        [event] = services.audit.list_events(action=AuditAction.UPDATE)
        assert event.entity_id == operator.id
        assert event.new_values == {"sessionsRevoked": 2}
        assert NEW_SECRET not in str(event.new_values)

        with pytest.raises(InvalidCredentials):
            services.credentials.authenticate(operator.email, SECRET)
        services.credentials.authenticate(operator.email, NEW_SECRET)

    def test_confirm_mismatch(self, services, operator) -> None:
        with pytest.raises(ConfirmMismatch):
            services.sessions.change_password(operator.id, SECRET, NEW_SECRET, NEW_SECRET + "x", CLIENT)

    def test_wrong_current_secret(self, services, operator) -> None:
        with pytest.raises(InvalidCurrentSecret):
            services.sessions.change_password(operator.id, "Wr0ng!Horse", NEW_SECRET, NEW_SECRET, CLIENT)

    def test_weak_new_secret(self, services, operator) -> None:
        with pytest.raises(WeakSecret) as info:
            services.sessions.change_password(operator.id, SECRET, "weakling", "weakling", CLIENT)
        assert info.value.detail
        assert services.audit.count(action=AuditAction.UPDATE) == 0

    def test_failure_leaves_everything_unchanged(self, services, database, operator) -> None:
        services.sessions.login(operator.email, SECRET, CLIENT)
        audit_events.drop(database.engine)
        with pytest.raises(StorageFailure):
            services.sessions.change_password(operator.id, SECRET, NEW_SECRET, NEW_SECRET, CLIENT)
        services.credentials.authenticate(operator.email, SECRET)
        assert services.ledger.count_for_owner(operator.id) == 1


class TestProvisioning:
    def test_provision_is_audited(self, services, operator) -> None:
        [event] = services.audit.list_events(action=AuditAction.CREATE)
        assert event.entity_id == operator.id
        assert event.new_values["email"] == operator.email

    def test_disable_revokes_sessions(self, services, operator) -> None:
        services.sessions.login(operator.email, SECRET, CLIENT)
        assert services.sessions.set_operator_active(operator.id, False) == 1
        assert services.credentials.get_by_id(operator.id).active is False
        [event] = services.audit.list_events(action=AuditAction.STATUS_CHANGE)
        assert event.old_values == {"active": True}

    def test_unknown_operator(self, services) -> None:
        with pytest.raises(NotFound):
            services.sessions.set_operator_active("missing", False)
        with pytest.raises(NotFound):
            services.sessions.get_profile("missing")


class TestSessionInfo:
    def test_counts_sessions_and_lists_recent_logins(self, services, operator) -> None:
        for _ in range(7):
            services.sessions.login(operator.email, SECRET, CLIENT)
        info = services.sessions.session_info(operator.id)
        assert info.active_sessions == 7
        assert len(info.recent_logins) == 5
        assert {e.action for e in info.recent_logins} == {AuditAction.LOGIN}
        assert info.recent_logins[0].client_ip == CLIENT.ip

    def test_no_sessions(self, services, operator) -> None:
        info = services.sessions.session_info(operator.id)
        assert info.active_sessions == 0
        assert info.recent_logins == []
