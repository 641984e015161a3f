"""
tests/test_revocation.py -- Login, authenticate and revocation through AuthService.

Covers:
  - login -> authenticate round trip; login failures are indistinguishable
  - logout_one removes one session and leaves the bearer token alone
  - logout_all: every earlier token fails with SessionRevokedError, no sessions remain
  - logout_all atomicity: unknown user writes nothing
  - credential-change flows (password, role, deactivation) revoke like logout_all
  - combined role + active updates are all-or-nothing and revoke once
  - revocations are logged only once they commit
  - a service signs and hashes with its own Settings.secret_key
  - enforce_session_rows makes the session row authoritative as well
"""

from __future__ import annotations

import logging

import pytest

from auth.errors import AuthenticationError, NotFoundError, SessionRevokedError, ValidationError
from auth.service import AuthService
from auth.tokens import decode_access_token, hash_session_token
from core.config import get_settings

DEFAULT_PASSWORD = "secret-pass-1"  # make_user default


@pytest.fixture
def ana(make_user):
    return make_user("ana", role="secretaria")


class TestLoginAndAuthenticate:
    def test_authenticate_right_after_login(self, auth_service, ana) -> None:
        result = auth_service.login("ana", DEFAULT_PASSWORD, user_agent="pytest")
        ctx = auth_service.authenticate(result.access_token)
        assert (ctx.user_id, ctx.role, ctx.session_id) == (ana.id, "secretaria", result.session.id)
        assert auth_service.users.get_by_id(ana.id).last_login is not None

    def test_login_by_email(self, auth_service, ana) -> None:
        assert auth_service.login("ANA@clinic.test", DEFAULT_PASSWORD).user.id == ana.id

    @pytest.mark.parametrize(("identifier", "password"), [("ana", "wrong-password"), ("ghost", DEFAULT_PASSWORD)])
    def test_login_failures_look_the_same(self, auth_service, ana, identifier: str, password: str) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.login(identifier, password)
        assert exc_info.value.message == "Invalid username or password."
        assert exc_info.value.detail == {"reason": "bad_credentials"}

    def test_password_over_72_bytes_is_a_plain_login_failure(self, auth_service, ana) -> None:
        # bcrypt 4.x would compare only the first 72 bytes; bcrypt 5 would raise.
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.login("ana", DEFAULT_PASSWORD + "ã" * 40)
        assert exc_info.value.detail == {"reason": "bad_credentials"}

    def test_inactive_user_cannot_login(self, auth_service, ana, make_user) -> None:
        admin = make_user("boss", role="admin")
        auth_service.set_user_active(admin.id, ana.id, False)
        with pytest.raises(AuthenticationError):
            auth_service.login("ana", DEFAULT_PASSWORD)

    def test_expired_token_rejected(self, auth_service, ana, clock) -> None:
        token = auth_service.login("ana", DEFAULT_PASSWORD).access_token
        clock.advance(seconds=auth_service.settings.token_expire_seconds)
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(token)


class TestLogoutOne:
    def test_removes_only_that_session(self, auth_service, ana) -> None:
        phone = auth_service.login("ana", DEFAULT_PASSWORD, user_agent="phone")
        laptop = auth_service.login("ana", DEFAULT_PASSWORD, user_agent="laptop")

        assert auth_service.logout_one(phone.session_token) is True
        remaining = auth_service.find_sessions_by_user(ana.id)
        assert [s.id for s in remaining] == [laptop.session.id]
        # counter untouched: the bearer token keeps working until it expires
        auth_service.authenticate(phone.access_token)

    def test_repeat_logout_is_harmless(self, auth_service, ana) -> None:
        result = auth_service.login("ana", DEFAULT_PASSWORD)
        assert auth_service.logout_one(result.session_token) is True
        assert auth_service.logout_one(result.session_token) is False
        assert auth_service.logout_one("") is False


class TestLogoutAll:
    def test_every_prior_token_revoked_and_sessions_gone(self, auth_service, ana) -> None:
        tokens = [auth_service.login("ana", DEFAULT_PASSWORD).access_token for _ in range(3)]

        result = auth_service.logout_all(ana.id)
        assert result.token_version == 1
        assert result.sessions_removed == 3

        for token in tokens:
            with pytest.raises(SessionRevokedError):
                auth_service.authenticate(token)
        assert auth_service.find_sessions_by_user(ana.id) == []

    def test_new_login_after_logout_all_works(self, auth_service, ana) -> None:
        auth_service.logout_all(ana.id)
        fresh = auth_service.login("ana", DEFAULT_PASSWORD)
        assert auth_service.authenticate(fresh.access_token).token_version == 1

    def test_other_users_unaffected(self, auth_service, ana, make_user) -> None:
        make_user("bia")
        bia_token = auth_service.login("bia", DEFAULT_PASSWORD).access_token
        auth_service.login("ana", DEFAULT_PASSWORD)
        auth_service.logout_all(ana.id)
        auth_service.authenticate(bia_token)
        assert len(auth_service.find_sessions_by_user(auth_service.users.find_by_username_or_email("bia").id)) == 1

    def test_unknown_user_writes_nothing(self, auth_service, ana) -> None:
        auth_service.login("ana", DEFAULT_PASSWORD)
        with pytest.raises(NotFoundError):
            auth_service.logout_all(9999)
        assert len(auth_service.find_sessions_by_user(ana.id)) == 1

    def test_rollback_keeps_counter_and_sessions_together(self, auth_service, ana) -> None:
        auth_service.login("ana", DEFAULT_PASSWORD)
        with pytest.raises(RuntimeError):
            with auth_service.engine.begin() as conn:
                auth_service.revocation.logout_all(ana.id, conn=conn)
                raise RuntimeError("caller failed after revoking")
        assert auth_service.get_user(ana.id).token_version == 0
        assert len(auth_service.find_sessions_by_user(ana.id)) == 1


class TestCredentialChanges:
    def test_change_password_revokes_and_returns_fresh_login(self, auth_service, ana) -> None:
        old = auth_service.login("ana", DEFAULT_PASSWORD)
        fresh = auth_service.change_password(ana.id, DEFAULT_PASSWORD, "brand-new-pass")

        with pytest.raises(SessionRevokedError):
            auth_service.authenticate(old.access_token)
        assert auth_service.authenticate(fresh.access_token).user_id == ana.id
        assert [s.id for s in auth_service.find_sessions_by_user(ana.id)] == [fresh.session.id]
        auth_service.login("ana", "brand-new-pass")
        with pytest.raises(AuthenticationError):
            auth_service.login("ana", DEFAULT_PASSWORD)

    def test_change_password_wrong_current(self, auth_service, ana) -> None:
        with pytest.raises(ValidationError) as exc_info:
            auth_service.change_password(ana.id, "not-my-password", "brand-new-pass")
        assert exc_info.value.detail["field"] == "current_password"
        assert auth_service.get_user(ana.id).token_version == 0

    def test_change_password_too_short(self, auth_service, ana) -> None:
        with pytest.raises(ValidationError):
            auth_service.change_password(ana.id, DEFAULT_PASSWORD, "short")

    def test_change_password_over_72_bytes(self, auth_service, ana) -> None:
        with pytest.raises(ValidationError) as exc_info:
            auth_service.change_password(ana.id, DEFAULT_PASSWORD, "é" * 40)
        assert exc_info.value.detail == {"field": "new_password"}
        assert auth_service.get_user(ana.id).token_version == 0
        auth_service.login("ana", DEFAULT_PASSWORD)

    def test_create_user_over_72_bytes(self, auth_service) -> None:
        with pytest.raises(ValidationError) as exc_info:
            auth_service.create_user("rui", "rui@clinic.test", "ç" * 37, "terapeuta")
        assert exc_info.value.detail == {"field": "password"}

    def test_role_change_revokes(self, auth_service, ana) -> None:
        token = auth_service.login("ana", DEFAULT_PASSWORD).access_token
        assert auth_service.set_user_role(ana.id, "terapeuta").role == "terapeuta"
        with pytest.raises(SessionRevokedError):
            auth_service.authenticate(token)
        fresh = auth_service.login("ana", DEFAULT_PASSWORD).access_token
        assert auth_service.authenticate(fresh).role == "terapeuta"

    def test_same_role_is_a_no_op(self, auth_service, ana) -> None:
        token = auth_service.login("ana", DEFAULT_PASSWORD).access_token
        auth_service.set_user_role(ana.id, "secretaria")
        auth_service.authenticate(token)

    def test_last_admin_cannot_be_demoted(self, auth_service, make_user) -> None:
        boss = make_user("boss", role="admin")
        with pytest.raises(ValidationError):
            auth_service.set_user_role(boss.id, "terapeuta")
        assert auth_service.get_user(boss.id).role == "admin"
        assert auth_service.get_user(boss.id).token_version == 0

    def test_admin_can_be_demoted_when_another_remains(self, auth_service, make_user) -> None:
        boss = make_user("boss", role="admin")
        make_user("deputy", role="admin")
        assert auth_service.set_user_role(boss.id, "secretaria").role == "secretaria"

    def test_deactivation_revokes(self, auth_service, ana, make_user) -> None:
        boss = make_user("boss", role="admin")
        token = auth_service.login("ana", DEFAULT_PASSWORD).access_token
        auth_service.set_user_active(boss.id, ana.id, False)
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(token)
        assert auth_service.find_sessions_by_user(ana.id) == []

    def test_self_deactivation_blocked(self, auth_service, make_user) -> None:
        boss = make_user("boss", role="admin")
        with pytest.raises(ValidationError):
            auth_service.set_user_active(boss.id, boss.id, False)

    def test_last_admin_cannot_be_deactivated(self, auth_service, make_user) -> None:
        boss = make_user("boss", role="admin")
        deputy = make_user("deputy", role="admin")
        auth_service.set_user_active(boss.id, deputy.id, False)
        with pytest.raises(ValidationError):
            auth_service.set_user_active(deputy.id, boss.id, False)
        assert auth_service.get_user(boss.id).is_active is True

    def test_role_and_deactivation_together_revoke_once(self, auth_service, ana, make_user) -> None:
        boss = make_user("boss", role="admin")
        token = auth_service.login("ana", DEFAULT_PASSWORD).access_token
        updated = auth_service.update_user(boss.id, ana.id, role="terapeuta", is_active=False)
        assert (updated.role, updated.is_active, updated.token_version) == ("terapeuta", False, 1)
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(token)

    def test_rejected_combined_update_changes_nothing(self, auth_service, make_user) -> None:
        boss = make_user("boss", role="admin")
        make_user("deputy", role="admin")
        with pytest.raises(ValidationError) as exc_info:
            auth_service.update_user(boss.id, boss.id, role="terapeuta", is_active=False)
        assert exc_info.value.detail == {"field": "is_active"}
        unchanged = auth_service.get_user(boss.id)
        assert (unchanged.role, unchanged.is_active, unchanged.token_version) == ("admin", True, 0)

    def test_last_admin_demote_and_deactivate_rolls_back(self, auth_service, make_user) -> None:
        boss = make_user("boss", role="admin")
        other = make_user("other", role="secretaria")
        with pytest.raises(ValidationError):
            auth_service.update_user(other.id, boss.id, role="terapeuta", is_active=False)
        unchanged = auth_service.get_user(boss.id)
        assert (unchanged.role, unchanged.is_active, unchanged.token_version) == ("admin", True, 0)

    def test_rolled_back_revocation_is_not_logged(self, auth_service, make_user, caplog) -> None:
        boss = make_user("boss", role="admin")
        with caplog.at_level(logging.INFO, logger="clinicgate"):
            with pytest.raises(ValidationError):
                auth_service.set_user_role(boss.id, "terapeuta")
        assert not any("Revoked all logins" in r.getMessage() for r in caplog.records)

    def test_committed_revocation_is_logged_once(self, auth_service, ana, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="clinicgate"):
            auth_service.set_user_role(ana.id, "terapeuta")
        revoked = [r.getMessage() for r in caplog.records if "Revoked all logins" in r.getMessage()]
        assert revoked == [f"Revoked all logins user_id={ana.id} token_version=1 sessions_removed=0"]


class TestServiceSecretKey:
    def test_service_signs_and_hashes_with_its_own_key(self, db_url, clock) -> None:
        settings = get_settings().model_copy(update={"secret_key": "s" * 48})
        service = AuthService.from_url(db_url, settings=settings, clock=clock)
        try:
            service.create_user("ana", "ana@clinic.test", DEFAULT_PASSWORD, "terapeuta")
            result = service.login("ana", DEFAULT_PASSWORD)
            assert service.authenticate(result.access_token).username == "ana"
            with pytest.raises(AuthenticationError):
                decode_access_token(result.access_token, now=clock())
            assert result.session.token_hash == hash_session_token(result.session_token, "s" * 48)
            assert service.logout_one(result.session_token) is True
        finally:
            service.close()


class TestEnforcedSessionRows:
    @pytest.fixture
    def strict_service(self, db_url, clock):
        settings = get_settings().model_copy(update={"enforce_session_rows": True})
        service = AuthService.from_url(db_url, settings=settings, clock=clock)
        yield service
        service.close()

    def test_token_dies_with_its_session(self, strict_service) -> None:
        strict_service.create_user("ana", "ana@clinic.test", DEFAULT_PASSWORD, "terapeuta")
        phone = strict_service.login("ana", DEFAULT_PASSWORD)
        laptop = strict_service.login("ana", DEFAULT_PASSWORD)

        strict_service.logout_one(phone.session_token)
        with pytest.raises(SessionRevokedError):
            strict_service.authenticate(phone.access_token)
        strict_service.authenticate(laptop.access_token)


class TestBootstrapAdmin:
    def test_ensure_admin_creates_once(self, db_url, clock) -> None:
        settings = get_settings().model_copy(
            update={"admin_username": "root", "admin_email": "root@clinic.test", "admin_password": "root-pass-123"}
        )
        service = AuthService.from_url(db_url, settings=settings, clock=clock)
        try:
            admin = service.ensure_admin()
            assert admin is not None and admin.role == "admin"
            assert service.ensure_admin() is None
        finally:
            service.close()

    def test_ensure_admin_without_settings(self, auth_service) -> None:
        assert auth_service.ensure_admin() is None
