import time

import pyotp
import pytest

from qcauth.service.auth import AuthService
from qcauth.service.errors import (
    InvalidCodeError,
    InvalidCredentialsError,
    UnauthenticatedError,
)
from qcauth.storage.models import UserStatus, utcnow


@pytest.fixture
def worker(make_user):
    return make_user("ana@example.com", "trabajador", username="ana", name="Ana Pérez")


@pytest.fixture
def admin(make_user):
    return make_user("jefe@example.com", "administrador", username="jefe")


def _enroll(runtime, user, claims_for):
    claims = claims_for(user)
    setup = runtime.two_factor.setup(claims)
    runtime.two_factor.enable(claims, pyotp.TOTP(setup.secret).now())
    return setup.secret


def _stale_code(secret):
    # an hour away is far outside the accepted window
    return pyotp.TOTP(secret).at(time.time() + 3600)


def _login_failures(runtime):
    return [e.metadata.get("reason") for e in runtime.audit.entries(action="auth.login.failed")]


class TestLogin:
    def test_login_with_email(self, runtime, worker, test_user_password):
        result = runtime.auth.login("ana@example.com", test_user_password, ip_address="10.0.0.1")
        assert result.claims.user_id == worker.id
        assert result.claims.email == "ana@example.com"
        assert result.claims.session_id == result.session.id
        assert [r.name for r in result.claims.roles] == ["trabajador"]
        assert "content:read" in result.claims.permissions
        assert "content:delete" not in result.claims.permissions
        assert result.token.expires_in == runtime.tokens.ttl_minutes * 60
        assert runtime.store.get_session(result.session.id) is not None

    def test_login_with_username(self, runtime, worker, test_user_password):
        result = runtime.auth.login("ana", test_user_password)
        assert result.claims.user_id == worker.id

    def test_email_lookup_is_case_insensitive(self, runtime, worker, test_user_password):
        result = runtime.auth.login("  Ana@Example.COM ", test_user_password)
        assert result.claims.user_id == worker.id

    def test_login_records_last_login_and_audit(self, runtime, worker, test_user_password):
        before = utcnow()
        runtime.auth.login("ana", test_user_password, ip_address="10.0.0.1")
        stored = runtime.store.get_user(worker.id)
        assert stored.last_login_at is not None
        assert stored.last_login_at >= before
        [entry] = runtime.audit.entries(action="auth.login.success")
        assert entry.user_id == worker.id
        assert entry.metadata == {"method": "password"}
        assert entry.ip_address == "10.0.0.1"

    def test_token_validates_back_to_same_claims(self, runtime, worker, test_user_password):
        result = runtime.auth.login("ana", test_user_password)
        assert runtime.auth.authenticate_token(result.token.token) == result.claims


class TestInvalidCredentials:
    def test_unknown_account(self, runtime):
        with pytest.raises(InvalidCredentialsError) as exc_info:
            runtime.auth.login("nobody@example.com", "whatever-password")
        assert exc_info.value.status_code == 401
        assert _login_failures(runtime) == ["invalid_credentials"]

    def test_wrong_password(self, runtime, worker):
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.login("ana@example.com", "wrong-password")

    @pytest.mark.parametrize("status", [UserStatus.INACTIVE, UserStatus.SUSPENDED])
    def test_inactive_account(self, runtime, worker, test_user_password, status):
        runtime.store.update_user_status(worker.id, status)
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.login("ana@example.com", test_user_password)

    def test_account_without_password(self, runtime):
        runtime.store.create_user("sinclave@example.com")
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.login("sinclave@example.com", "")

    def test_failures_are_indistinguishable(self, runtime, worker, test_user_password):
        messages = set()
        for identifier, password in (
            ("nobody@example.com", test_user_password),
            ("ana@example.com", "wrong-password"),
        ):
            with pytest.raises(InvalidCredentialsError) as exc_info:
                runtime.auth.login(identifier, password)
            messages.add((exc_info.value.message, exc_info.value.error_code))
        assert messages == {("invalid credentials", "invalid_credentials")}

    def test_no_session_created_on_failure(self, runtime, worker):
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.login("ana", "wrong-password")
        assert runtime.store.sessions == {}


class TestStepUp:
    def test_enrolled_worker_needs_code(self, runtime, worker, claims_for, test_user_password):
        _enroll(runtime, worker, claims_for)
        with pytest.raises(InvalidCodeError) as exc_info:
            runtime.auth.login("ana", test_user_password)
        assert exc_info.value.detail == {"requires2FA": True}
        assert runtime.store.sessions == {}

    def test_enrolled_worker_with_code(self, runtime, worker, claims_for, test_user_password):
        secret = _enroll(runtime, worker, claims_for)
        result = runtime.auth.login("ana", test_user_password, code=pyotp.TOTP(secret).now())
        assert result.claims.requires_2fa is True
        assert result.claims.two_factor_enabled is True
        [entry] = runtime.audit.entries(action="auth.login.success")
        assert entry.metadata == {"method": "password+totp"}

    def test_enrolled_worker_with_bad_code(self, runtime, worker, claims_for, test_user_password):
        secret = _enroll(runtime, worker, claims_for)
        with pytest.raises(InvalidCodeError):
            runtime.auth.login("ana", test_user_password, code=_stale_code(secret))
        [entry] = runtime.audit.entries(action="2fa.login.failed")
        assert entry.metadata == {"reason": "invalid_token"}

    def test_admin_with_stored_secret_is_not_challenged(
        self, runtime, admin, test_user_password
    ):
        runtime.store.set_two_factor_secret(admin.id, pyotp.random_base32())
        runtime.store.enable_two_factor(admin.id)
        result = runtime.auth.login("jefe", test_user_password)
        assert result.claims.requires_2fa is False


class TestCheckRequired:
    def test_admin(self, runtime, admin, test_user_password):
        requirement = runtime.auth.check_two_factor_required("jefe", test_user_password)
        assert requirement.is_admin is True
        assert requirement.requires_2fa is False

    def test_worker_not_enrolled(self, runtime, worker, test_user_password):
        requirement = runtime.auth.check_two_factor_required("ana", test_user_password)
        assert requirement.is_admin is False
        assert requirement.requires_2fa is False

    def test_worker_enrolled(self, runtime, worker, claims_for, test_user_password):
        _enroll(runtime, worker, claims_for)
        requirement = runtime.auth.check_two_factor_required("ana", test_user_password)
        assert requirement.requires_2fa is True
        assert requirement.two_factor_enabled is True

    def test_wrong_password(self, runtime, worker):
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.check_two_factor_required("ana", "wrong-password")


class TestLoginVerify:
    def _reasons(self, runtime):
        return [e.metadata.get("reason") for e in runtime.audit.entries(action="2fa.login.failed")]

    def test_valid_code_issues_session(self, runtime, worker, claims_for, test_user_password):
        secret = _enroll(runtime, worker, claims_for)
        result = runtime.auth.verify_login_two_factor(
            "ana", test_user_password, pyotp.TOTP(secret).now()
        )
        assert result.claims.user_id == worker.id
        assert runtime.audit.entries(action="2fa.login.success")

    def test_not_enrolled_fails_generically(self, runtime, worker, test_user_password):
        with pytest.raises(InvalidCodeError) as exc_info:
            runtime.auth.verify_login_two_factor("ana", test_user_password, "123456")
        assert exc_info.value.message == "invalid verification code"
        assert self._reasons(runtime) == ["not_enabled"]

    def test_admin_fails_generically(self, runtime, admin, test_user_password):
        with pytest.raises(InvalidCodeError) as exc_info:
            runtime.auth.verify_login_two_factor("jefe", test_user_password, "123456")
        assert exc_info.value.message == "invalid verification code"
        assert self._reasons(runtime) == ["admin_exempt"]

    def test_bad_code(self, runtime, worker, claims_for, test_user_password):
        secret = _enroll(runtime, worker, claims_for)
        with pytest.raises(InvalidCodeError):
            runtime.auth.verify_login_two_factor("ana", test_user_password, _stale_code(secret))
        assert self._reasons(runtime) == ["invalid_token"]

    def test_wrong_password_reports_credentials(self, runtime, worker, claims_for):
        secret = _enroll(runtime, worker, claims_for)
        with pytest.raises(InvalidCredentialsError):
            runtime.auth.verify_login_two_factor("ana", "wrong", pyotp.TOTP(secret).now())


class TestSessions:
    def test_logout_revokes_token(self, runtime, worker, test_user_password):
        result = runtime.auth.login("ana", test_user_password)
        runtime.auth.logout(result.claims)
        with pytest.raises(UnauthenticatedError):
            runtime.auth.authenticate_token(result.token.token)
        assert runtime.audit.entries(action="auth.logout")

    def test_token_without_session_rejected(self, runtime, worker, claims_for):
        token = runtime.tokens.mint(claims_for(worker)).token
        with pytest.raises(UnauthenticatedError):
            runtime.auth.authenticate_token(token)

    def test_expired_session_row_rejected(self, runtime, worker, test_user_password):
        result = runtime.auth.login("ana", test_user_password)
        runtime.store.sessions[result.session.id].expires_at = utcnow()
        with pytest.raises(UnauthenticatedError):
            runtime.auth.authenticate_token(result.token.token)

    def test_session_belongs_to_subject(self, runtime, worker, make_user, claims_for):
        other = make_user("otro@example.com", "trabajador")
        session = runtime.store.create_session(other.id)
        token = runtime.tokens.mint(claims_for(worker, session.id)).token
        with pytest.raises(UnauthenticatedError):
            runtime.auth.authenticate_token(token)

    def test_revoking_user_sessions_invalidates_every_token(self, runtime, worker, test_user_password):
        first = runtime.auth.login("ana", test_user_password)
        second = runtime.auth.login("ana", test_user_password)
        assert runtime.store.revoke_user_sessions(worker.id) == 2
        for result in (first, second):
            with pytest.raises(UnauthenticatedError):
                runtime.auth.authenticate_token(result.token.token)


class TestRefresh:
    def test_refresh_rotates_session(self, runtime, worker, test_user_password):
        original = runtime.auth.login("ana", test_user_password)
        refreshed = runtime.auth.refresh(original.claims)
        assert refreshed.session.id != original.session.id
        assert refreshed.token.token != original.token.token
        with pytest.raises(UnauthenticatedError):
            runtime.auth.authenticate_token(original.token.token)
        claims = runtime.auth.authenticate_token(refreshed.token.token)
        assert claims.session_id == refreshed.session.id

    def test_refresh_keeps_snapshot(self, runtime, worker, test_user_password):
        original = runtime.auth.login("ana", test_user_password)
        runtime.rbac.assign_role(worker.id, "administrador")
        refreshed = runtime.auth.refresh(original.claims)
        assert [r.name for r in refreshed.claims.roles] == ["trabajador"]
        assert refreshed.claims.permissions == original.claims.permissions

    def test_refresh_can_rehydrate(self, runtime, worker, test_user_password):
        auth = AuthService(
            runtime.store,
            rbac=runtime.rbac,
            audit=runtime.audit,
            passwords=runtime.passwords,
            two_factor=runtime.two_factor,
            tokens=runtime.tokens,
            evaluator=runtime.evaluator,
            rehydrate_on_refresh=True,
        )
        original = auth.login("ana", test_user_password)
        runtime.rbac.assign_role(worker.id, "administrador")
        refreshed = auth.refresh(original.claims)
        assert {r.name for r in refreshed.claims.roles} == {"administrador", "trabajador"}
        assert "users:delete" in refreshed.claims.permissions

    def test_rehydrate_rejects_deactivated_account(self, runtime, worker, test_user_password):
        auth = AuthService(
            runtime.store,
            rbac=runtime.rbac,
            audit=runtime.audit,
            passwords=runtime.passwords,
            two_factor=runtime.two_factor,
            tokens=runtime.tokens,
            evaluator=runtime.evaluator,
            rehydrate_on_refresh=True,
        )
        original = auth.login("ana", test_user_password)
        runtime.store.update_user_status(worker.id, UserStatus.SUSPENDED)
        with pytest.raises(UnauthenticatedError):
            auth.refresh(original.claims)
