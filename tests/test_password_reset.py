"""Tests for the forgot/reset password flow."""

from datetime import timedelta

import pytest

from qcauth.service.auth import AuthService
from qcauth.service.errors import (
    AccountInactiveError,
    InvalidCredentialsError,
    TokenExpiredError,
    TokenInvalidError,
    TokenUsedError,
    UnauthenticatedError,
    ValidationError,
)
from qcauth.storage.models import UserStatus, utcnow

NEW_PASSWORD = "Nueva-Clave-Segura-99"


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def worker(make_user):
    return make_user("luis@example.com", "trabajador")


@pytest.fixture
def clock():
    return FrozenClock(utcnow())


@pytest.fixture
def auth(runtime, clock):
    return AuthService(
        runtime.store,
        rbac=runtime.rbac,
        audit=runtime.audit,
        passwords=runtime.passwords,
        two_factor=runtime.two_factor,
        tokens=runtime.tokens,
        evaluator=runtime.evaluator,
        reset_ttl_minutes=60,
        clock=clock,
    )


def _tokens_for(runtime, user):
    return [token for token, row in runtime.store.reset_tokens.items() if row.user_id == user.id]


def _issue(auth, runtime, user):
    auth.request_password_reset(user.email)
    [token] = _tokens_for(runtime, user)
    return token


class TestRequest:
    def test_token_issued_for_active_account(self, runtime, auth, clock, worker):
        token = _issue(auth, runtime, worker)
        assert len(token) == 64
        row = runtime.store.get_password_reset_token(token)
        assert row.expires_at == clock.now + timedelta(hours=1)
        assert row.used_at is None
        [entry] = runtime.audit.entries(action="password.reset.requested")
        assert entry.user_id == worker.id
        assert entry.metadata["tokenGenerated"] is True

    def test_email_is_normalized(self, runtime, auth, worker):
        auth.request_password_reset("  LUIS@Example.com ")
        assert len(_tokens_for(runtime, worker)) == 1

    def test_unknown_email_is_silent(self, runtime, auth):
        auth.request_password_reset("ghost@example.com", ip_address="10.1.1.1")
        assert runtime.store.reset_tokens == {}
        [entry] = runtime.audit.entries(action="password.reset.attempt")
        assert entry.metadata["result"] == "email_not_found"
        assert entry.ip_address == "10.1.1.1"

    def test_inactive_account_gets_no_token(self, runtime, auth, worker):
        runtime.store.update_user_status(worker.id, UserStatus.INACTIVE)
        auth.request_password_reset(worker.email)
        assert runtime.store.reset_tokens == {}
        [entry] = runtime.audit.entries(action="password.reset.attempt")
        assert entry.metadata["result"] == "user_inactive"
        assert entry.metadata["userStatus"] == "INACTIVE"

    def test_blank_email_rejected(self, auth):
        with pytest.raises(ValidationError):
            auth.request_password_reset("   ")

    def test_reissue_invalidates_previous_token(self, runtime, auth, worker):
        first = _issue(auth, runtime, worker)
        second = _issue(auth, runtime, worker)
        assert first != second
        with pytest.raises(TokenInvalidError):
            auth.verify_reset_token(first)
        assert auth.verify_reset_token(second).user_id == worker.id


class TestVerify:
    def test_valid_token(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        row = auth.verify_reset_token(token)
        assert row.user_id == worker.id

    @pytest.mark.parametrize("token", ["", "deadbeef" * 8])
    def test_unknown_token(self, auth, token):
        with pytest.raises(TokenInvalidError):
            auth.verify_reset_token(token)

    def test_still_valid_just_before_expiry(self, runtime, auth, clock, worker):
        token = _issue(auth, runtime, worker)
        clock.advance(minutes=59, seconds=59)
        assert auth.verify_reset_token(token).user_id == worker.id

    def test_expired_after_an_hour(self, runtime, auth, clock, worker):
        token = _issue(auth, runtime, worker)
        clock.advance(hours=1, seconds=1)
        with pytest.raises(TokenExpiredError):
            auth.verify_reset_token(token)
        with pytest.raises(TokenExpiredError):
            auth.reset_password(token, NEW_PASSWORD)

    def test_account_deactivated_after_issue(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        runtime.store.update_user_status(worker.id, UserStatus.SUSPENDED)
        with pytest.raises(AccountInactiveError):
            auth.verify_reset_token(token)


class TestReset:
    def test_reset_changes_password(self, runtime, auth, worker, test_user_password):
        token = _issue(auth, runtime, worker)
        auth.reset_password(token, NEW_PASSWORD, ip_address="10.2.2.2")
        assert runtime.auth.login(worker.email, NEW_PASSWORD).claims.user_id == worker.id
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.login(worker.email, test_user_password)
        [entry] = runtime.audit.entries(action="password.reset.completed")
        assert entry.metadata["tokenUsed"] == token[:8] + "..."
        assert entry.ip_address == "10.2.2.2"

    def test_token_is_single_use(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        auth.reset_password(token, NEW_PASSWORD)
        assert runtime.store.get_password_reset_token(token).used_at is not None
        with pytest.raises(TokenUsedError):
            auth.reset_password(token, "Otra-Clave-Distinta-1")
        with pytest.raises(TokenUsedError):
            auth.verify_reset_token(token)

    def test_reset_revokes_existing_sessions(self, runtime, auth, worker, test_user_password):
        session = runtime.auth.login(worker.email, test_user_password)
        token = _issue(auth, runtime, worker)
        auth.reset_password(token, NEW_PASSWORD)
        assert runtime.store.get_session(session.session.id) is None
        with pytest.raises(UnauthenticatedError):
            runtime.auth.authenticate_token(session.token.token)

    def test_short_password_rejected(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        with pytest.raises(ValidationError) as exc_info:
            auth.reset_password(token, "corta")
        assert exc_info.value.detail["min_length"] == runtime.passwords.min_length
        assert runtime.store.get_password_reset_token(token).used_at is None

    @pytest.mark.parametrize("token,password", [("", NEW_PASSWORD), ("abc", "")])
    def test_missing_fields(self, auth, token, password):
        with pytest.raises(ValidationError):
            auth.reset_password(token, password)

    def test_inactive_account_cannot_reset(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        runtime.store.update_user_status(worker.id, UserStatus.INACTIVE)
        with pytest.raises(AccountInactiveError):
            auth.reset_password(token, NEW_PASSWORD)


class TestFailureAudit:
    def _failures(self, runtime):
        return runtime.audit.entries(action="password.reset.failed")

    def test_unknown_token(self, runtime, auth):
        with pytest.raises(TokenInvalidError):
            auth.reset_password("deadbeef" * 8, NEW_PASSWORD, ip_address="10.3.3.3")
        [entry] = self._failures(runtime)
        assert entry.metadata == {"reason": "token_invalid", "tokenUsed": "deadbeef..."}
        assert entry.user_id is None
        assert entry.ip_address == "10.3.3.3"

    def test_expired_token(self, runtime, auth, clock, worker):
        token = _issue(auth, runtime, worker)
        clock.advance(hours=1, seconds=1)
        with pytest.raises(TokenExpiredError):
            auth.reset_password(token, NEW_PASSWORD)
        [entry] = self._failures(runtime)
        assert entry.metadata["reason"] == "token_expired"
        assert entry.user_id == worker.id

    def test_reused_token(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        auth.reset_password(token, NEW_PASSWORD)
        assert self._failures(runtime) == []
        with pytest.raises(TokenUsedError):
            auth.reset_password(token, "Otra-Clave-Distinta-1")
        [entry] = self._failures(runtime)
        assert entry.metadata == {"reason": "token_used", "tokenUsed": token[:8] + "..."}

    def test_inactive_account(self, runtime, auth, worker):
        token = _issue(auth, runtime, worker)
        runtime.store.update_user_status(worker.id, UserStatus.INACTIVE)
        with pytest.raises(AccountInactiveError):
            auth.reset_password(token, NEW_PASSWORD)
        [entry] = self._failures(runtime)
        assert entry.metadata["reason"] == "user_inactive"

    def test_lost_race_to_consume(self, runtime, auth, worker, monkeypatch):
        token = _issue(auth, runtime, worker)
        monkeypatch.setattr(runtime.store, "mark_password_reset_used", lambda *args: False)
        with pytest.raises(TokenUsedError):
            auth.reset_password(token, NEW_PASSWORD)
        [entry] = self._failures(runtime)
        assert entry.metadata["reason"] == "token_used"
        assert entry.user_id == worker.id
        assert runtime.audit.entries(action="password.reset.completed") == []
