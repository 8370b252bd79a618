import asyncio
import os
from collections.abc import Generator

import pytest

# Minimum bcrypt cost keeps the suite fast; must be set before settings load.
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_JSON", "false")

from fastapi.testclient import TestClient  # noqa: E402

from cuddly_auth.api import auth as auth_api  # noqa: E402
from cuddly_auth.api import webauthn as webauthn_api  # noqa: E402
from cuddly_auth.db.session import Database  # noqa: E402
from cuddly_auth.main import get_application  # noqa: E402

MEMORY_URL = "sqlite+aiosqlite:///:memory:"

_RATE_LIMITS = (
    auth_api.login_rate_limit,
    auth_api.register_rate_limit,
    webauthn_api.passkey_login_rate_limit,
)


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_auth_rate_limits() -> Generator[None, None, None]:
    # The in-memory rate-limit buckets are process-global and can leak across tests.
    for dep in _RATE_LIMITS:
        dep.buckets.clear()
    yield
    for dep in _RATE_LIMITS:
        dep.buckets.clear()


@pytest.fixture
def database() -> Generator[Database, None, None]:
    db = Database(MEMORY_URL)
    asyncio.run(db.create_all())
    yield db
    try:
        asyncio.run(db.dispose())
    except RuntimeError:
        pass


@pytest.fixture
def client(database: Database) -> Generator[TestClient, None, None]:
    test_client = TestClient(get_application(database=database))
    yield test_client
    test_client.close()
