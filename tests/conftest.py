import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_PEPPER", "test-pepper-for-testing-only")
# Cheapest Argon2id cost the library accepts keeps the suite fast
os.environ.setdefault("PASSWORD_HASH_MEMORY", "8")
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1")
# No Redis in unit tests; the runtime falls back to the in-memory token cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from todo_api.config import Settings  # noqa: E402
from todo_api.service.auth import AuthService  # noqa: E402
from todo_api.service.runtime import reset_runtime_for_tests  # noqa: E402
from todo_api.storage.memory import MemoryStore, MemoryTokenCache  # noqa: E402

VALID_PASSWORD = "Valid1@Pass"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Explicit settings with cheap hashing and a small lockout threshold."""
    return Settings(
        test_mode=True,
        use_memory_store=True,
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        password_pepper="Test-Pepper_for-Automation-Only",
        password_hash_memory=8,
        password_hash_iterations=1,
        login_max_attempts=3,
        login_attempts_seconds=300,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=60 * 60 * 24,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def token_cache():
    return MemoryTokenCache()


@pytest.fixture
def auth_service(memory_store, token_cache, settings):
    return AuthService(store=memory_store, cache=token_cache, settings=settings)


@pytest.fixture
def registered_user(auth_service):
    return auth_service.register_user("Doe", "Jane", "e@x.com", VALID_PASSWORD)


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
