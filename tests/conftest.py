import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("ACCESS_TOKEN_EXPIRE_MINUTES", "1440")
os.environ.setdefault("REFRESH_TOKEN_EXPIRE_DAYS", "7")
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("DATABASE_CONNECTION_STRING", None)
os.environ.pop("LOGFIRE_WRITE_TOKEN", None)

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from main import app  # noqa: E402
from security.helpers import get_password_hash  # noqa: E402
from security.settings import get_token_settings, reset_settings  # noqa: E402
from security.tokens import CredentialEncoder, get_credential_encoder, reset_credential_encoder  # noqa: E402
from services.user_store import InMemoryUserStore, get_user_store  # noqa: E402

TEST_PASSWORD = "TestPassword123"


@pytest.fixture(autouse=True)
def reset_global_state():
    reset_settings()
    reset_credential_encoder()
    yield
    app.dependency_overrides.clear()
    reset_settings()
    reset_credential_encoder()


@pytest.fixture
def store():
    return InMemoryUserStore()


@pytest.fixture
def encoder():
    return CredentialEncoder(get_token_settings())


@pytest.fixture
def client(store, encoder):
    """Create a test client wired to an isolated in-memory store."""
    app.dependency_overrides[get_user_store] = lambda: store
    app.dependency_overrides[get_credential_encoder] = lambda: encoder
    return TestClient(app)


@pytest.fixture
def test_user(store):
    """Create a registered user directly in the store."""
    return asyncio.run(
        store.create_user(
            username="viewer",
            email="viewer@example.com",
            fullname="Test Viewer",
            password_hash=get_password_hash(TEST_PASSWORD),
        )
    )


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
