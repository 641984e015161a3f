"""
tests/test_invites.py -- Unit tests for InviteService / InviteLedger.

Covers:
  - Issue: generated code shape, default lifetime, validation, collisions
  - Redemption: happy path, single use, expiry boundary, email constraint
  - Atomicity: a failed user insert leaves the invite redeemable
  - Concurrency: N simultaneous redemptions of one code -> exactly one account
  - Email dispatch bookkeeping and cooldown
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from auth.errors import ConflictError, InviteInvalidError, NotFoundError, ValidationError
from auth.invites import CODE_ALPHABET, CODE_LENGTH, InviteService
from auth.models import SignupFields
from auth.service import AuthService


def _signup(username: str, email: str | None = None, password: str = "long-enough-1") -> SignupFields:
    return SignupFields(username=username, email=email or f"{username}@clinic.test", password=password)


class TestIssue:
    def test_generated_code_and_defaults(self, auth_service, clock) -> None:
        invite = auth_service.issue_invite("secretaria")
        assert len(invite.code) == CODE_LENGTH
        assert set(invite.code) <= set(CODE_ALPHABET)
        assert invite.used is False
        assert invite.email is None
        assert invite.expires_at == clock() + timedelta(days=auth_service.settings.invite_expire_days)

    def test_explicit_code_and_email_are_normalized(self, auth_service) -> None:
        invite = auth_service.issue_invite("terapeuta", email=" Rui@Clinic.Test ", code="test-1")
        assert invite.code == "TEST-1"
        assert invite.email == "rui@clinic.test"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"role": "paciente"},
            {"role": "terapeuta", "ttl_seconds": 0},
            {"role": "terapeuta", "email": "not-an-email"},
            {"role": "terapeuta", "code": "a b"},
        ],
    )
    def test_invalid_input(self, auth_service, kwargs: dict) -> None:
        with pytest.raises(ValidationError):
            auth_service.issue_invite(**kwargs)

    def test_duplicate_explicit_code_conflicts(self, auth_service) -> None:
        auth_service.issue_invite("terapeuta", code="DUP-1")
        with pytest.raises(ConflictError):
            auth_service.issue_invite("secretaria", code="DUP-1")

    def _service_with_codes(self, auth_service: AuthService, clock, codes: list[str]) -> InviteService:
        it = iter(codes)
        return InviteService(
            auth_service.invites.ledger,
            auth_service.users,
            auth_service.engine,
            clock=clock,
            code_factory=lambda: next(it),
        )

    def test_generated_code_collision_retried_once(self, auth_service, clock) -> None:
        service = self._service_with_codes(auth_service, clock, ["AAAA2222", "AAAA2222", "BBBB3333"])
        service.issue("terapeuta")
        assert service.issue("terapeuta").code == "BBBB3333"

    def test_second_generated_collision_raises(self, auth_service, clock) -> None:
        service = self._service_with_codes(auth_service, clock, ["CCCC4444"] * 3)
        service.issue("terapeuta")
        with pytest.raises(ConflictError):
            service.issue("terapeuta")


class TestRedeem:
    def test_terapeuta_invite_scenario(self, auth_service, make_user) -> None:
        admin = make_user("boss", role="admin")
        invite = auth_service.issue_invite("terapeuta", ttl_seconds=24 * 3600, code="TEST-1", created_by=admin.id)

        user = auth_service.redeem_invite("TEST-1", _signup("rui"))
        assert user.role == "terapeuta"
        assert user.is_active is True

        stored = auth_service.invites.ledger.get_by_id(invite.id)
        assert stored.used is True
        assert stored.used_by == user.id
        assert stored.created_by == admin.id

        with pytest.raises(InviteInvalidError):
            auth_service.redeem_invite("TEST-1", _signup("lia"))

    def test_code_lookup_is_case_insensitive(self, auth_service) -> None:
        auth_service.issue_invite("secretaria", code="MIXED-9")
        assert auth_service.redeem_invite(" mixed-9 ", _signup("sol")).role == "secretaria"

    def test_unknown_code(self, auth_service) -> None:
        with pytest.raises(InviteInvalidError) as exc_info:
            auth_service.redeem_invite("NOPE-0", _signup("rui"))
        assert exc_info.value.detail["reason"] == "not_found"

    def test_valid_one_second_before_expiry(self, auth_service, clock) -> None:
        auth_service.issue_invite("terapeuta", ttl_seconds=3600, code="EDGE-1")
        clock.advance(seconds=3599)
        assert auth_service.redeem_invite("EDGE-1", _signup("rui")).role == "terapeuta"

    def test_expired_exactly_at_expiry(self, auth_service, clock) -> None:
        auth_service.issue_invite("terapeuta", ttl_seconds=3600, code="EDGE-2")
        clock.advance(seconds=3600)
        with pytest.raises(InviteInvalidError) as exc_info:
            auth_service.redeem_invite("EDGE-2", _signup("rui"))
        assert exc_info.value.detail["reason"] == "expired"
        with pytest.raises(InviteInvalidError):
            auth_service.invites.get_info("EDGE-2")

    def test_email_constraint_mismatch(self, auth_service) -> None:
        auth_service.issue_invite("terapeuta", email="rui@clinic.test", code="MAIL-1")
        with pytest.raises(InviteInvalidError) as exc_info:
            auth_service.redeem_invite("MAIL-1", _signup("rui", email="someone@else.test"))
        assert exc_info.value.detail["reason"] == "email_mismatch"

    def test_email_constraint_is_case_insensitive(self, auth_service) -> None:
        auth_service.issue_invite("terapeuta", email="rui@clinic.test", code="MAIL-2")
        user = auth_service.redeem_invite("MAIL-2", _signup("rui", email="RUI@Clinic.TEST"))
        assert user.email == "rui@clinic.test"

    @pytest.mark.parametrize(
        "fields",
        [
            SignupFields(username="x", email="ok@clinic.test", password="long-enough-1"),
            SignupFields(username="rui", email="nope", password="long-enough-1"),
            SignupFields(username="rui", email="ok@clinic.test", password="short"),
        ],
    )
    def test_bad_signup_fields_do_not_consume_invite(self, auth_service, fields: SignupFields) -> None:
        invite = auth_service.issue_invite("terapeuta")
        with pytest.raises(ValidationError):
            auth_service.redeem_invite(invite.code, fields)
        assert auth_service.invites.ledger.get_by_id(invite.id).used is False

    def test_password_over_72_bytes_is_rejected_before_hashing(self, auth_service) -> None:
        # 40 characters, 80 UTF-8 bytes: within the character cap, past bcrypt's byte limit.
        invite = auth_service.issue_invite("terapeuta")
        with pytest.raises(ValidationError) as exc_info:
            auth_service.redeem_invite(invite.code, _signup("rui", password="ã" * 40))
        assert exc_info.value.detail == {"field": "password"}
        assert auth_service.invites.ledger.get_by_id(invite.id).used is False

    def test_multibyte_password_within_72_bytes_works(self, auth_service) -> None:
        invite = auth_service.issue_invite("terapeuta")
        password = "ação" * 9  # 36 characters, 54 bytes
        user = auth_service.redeem_invite(invite.code, _signup("rui", password=password))
        assert auth_service.login("rui", password).user.id == user.id

    def test_taken_username_rolls_back_the_flip(self, auth_service, make_user) -> None:
        make_user("rui")
        invite = auth_service.issue_invite("terapeuta")
        with pytest.raises(ValidationError):
            auth_service.redeem_invite(invite.code, _signup("rui", email="rui2@clinic.test"))
        assert auth_service.invites.ledger.get_by_id(invite.id).used is False
        assert auth_service.redeem_invite(invite.code, _signup("rui2")).username == "rui2"

    def test_mark_used_refuses_expired_invite(self, auth_service, clock) -> None:
        invite = auth_service.issue_invite("terapeuta", ttl_seconds=60)
        clock.advance(seconds=61)
        assert auth_service.invites.ledger.mark_used(invite.id) is False


class TestConcurrentRedemption:
    @pytest.mark.parametrize("callers", [2, 8])
    def test_exactly_one_caller_wins(self, auth_service, callers: int) -> None:
        invite = auth_service.issue_invite("terapeuta", code=f"RACE-{callers}")
        users_before = len(auth_service.list_users())
        barrier = threading.Barrier(callers)

        def attempt(i: int):
            barrier.wait()
            try:
                return auth_service.redeem_invite(invite.code, _signup(f"racer{i}"))
            except InviteInvalidError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=callers) as pool:
            outcomes = list(pool.map(attempt, range(callers)))

        winners = [o for o in outcomes if not isinstance(o, InviteInvalidError)]
        losers = [o for o in outcomes if isinstance(o, InviteInvalidError)]
        assert len(winners) == 1
        assert len(losers) == callers - 1
        assert len(auth_service.list_users()) == users_before + 1
        assert auth_service.invites.ledger.get_by_id(invite.id).used_by == winners[0].id


class TestEmailDispatch:
    def test_record_email_sent(self, auth_service, clock) -> None:
        invite = auth_service.issue_invite("terapeuta", email="rui@clinic.test")
        updated = auth_service.invites.record_email_sent(invite.id)
        assert updated.last_email_sent == clock()

    def test_record_email_sent_unknown_invite(self, auth_service) -> None:
        with pytest.raises(NotFoundError):
            auth_service.invites.record_email_sent(424242)

    def test_cooldown(self, auth_service, clock) -> None:
        invite = auth_service.issue_invite("terapeuta", email="rui@clinic.test")
        auth_service.invites.claim_email_dispatch(invite.id)
        clock.advance(seconds=auth_service.invites.email_cooldown_seconds - 1)
        with pytest.raises(ValidationError) as exc_info:
            auth_service.invites.claim_email_dispatch(invite.id)
        assert exc_info.value.detail["retry_after"] >= 1
        clock.advance(seconds=1)
        assert auth_service.invites.claim_email_dispatch(invite.id).last_email_sent == clock()

    def test_invite_without_email_cannot_be_dispatched(self, auth_service) -> None:
        invite = auth_service.issue_invite("terapeuta")
        with pytest.raises(ValidationError):
            auth_service.invites.check_email_dispatch(invite.id)

    def test_used_invite_cannot_be_dispatched(self, auth_service) -> None:
        invite = auth_service.issue_invite("terapeuta", email="rui@clinic.test")
        auth_service.redeem_invite(invite.code, _signup("rui"))
        with pytest.raises(InviteInvalidError):
            auth_service.invites.check_email_dispatch(invite.id)


class TestListAndDelete:
    def test_list_newest_first(self, auth_service, clock) -> None:
        first = auth_service.issue_invite("terapeuta")
        clock.advance(seconds=1)
        second = auth_service.issue_invite("secretaria")
        assert [i.id for i in auth_service.invites.list_invites()] == [second.id, first.id]

    def test_delete(self, auth_service) -> None:
        invite = auth_service.issue_invite("terapeuta")
        auth_service.invites.delete(invite.id)
        assert auth_service.invites.list_invites() == []
        with pytest.raises(NotFoundError):
            auth_service.invites.delete(invite.id)
