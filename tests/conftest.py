import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that builds Settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL selects the in-process cache without a connection attempt
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("FRONTEND_LOGIN_URL", "https://app.example.com/login")
os.environ.setdefault("CORS_ALLOW_ORIGINS", "https://spa.example.com")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from antares.config import Settings  # noqa: E402
from antares.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class FakeClock:
    """Manually advanced clock shared by signers and the in-memory cache."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        frontend_login_url="https://app.example.com/login",
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
