import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any qcauth import so cached settings pick these up
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Tests always exercise the in-process rate limiter
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from qcauth.config import Settings, reset_settings_cache  # noqa: E402
from qcauth.service.runtime import Runtime  # noqa: E402

TEST_PASSWORD = "Contrasena-Segura-2024"
TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture(autouse=True)
def clear_settings_cache():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        jwt_secret=TEST_JWT_SECRET,
        session_cookie_secure=False,
    )


@pytest.fixture
def runtime(settings):
    rt = Runtime(settings)
    rt.rbac.seed_defaults()
    yield rt
    rt.store.close()


@pytest.fixture
def store(runtime):
    return runtime.store


@pytest.fixture
def test_user_password():
    return TEST_PASSWORD


@pytest.fixture
def make_user(runtime):
    """Create an active user with a password and optional role name."""

    def _make(email, role=None, *, password=TEST_PASSWORD, username=None, name=None):
        user = runtime.store.create_user(email, username, name=name)
        runtime.passwords.set_password(user.id, password)
        if role:
            runtime.rbac.assign_role(user.id, role)
        return runtime.store.get_user(user.id)

    return _make


@pytest.fixture
def claims_for(runtime):
    """Claim snapshot for a stored user, as a login would mint it."""

    def _claims(user, session_id=None):
        fresh = runtime.store.get_user(user.id)
        return runtime.auth.principal_for(fresh).to_claims(session_id)

    return _claims


@pytest.fixture
def client(runtime):
    from qcauth.app import create_app

    return TestClient(create_app(runtime))


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
