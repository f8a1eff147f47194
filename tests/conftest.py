import asyncio
import inspect
import os
import sys
import time
from pathlib import Path

# Settings are read on first runtime build, so the environment must be in place first.
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

DEFAULT_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, now: float | None = None):
        self.now = time.time() if now is None else now

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
def runtime():
    return get_runtime()


@pytest.fixture
def make_user(runtime):
    def _make(
        email: str,
        password: str = DEFAULT_PASSWORD,
        *,
        tenant_id: str = "acme",
        role: str = "member",
        is_active: bool = True,
    ):
        user = runtime.store.create_user(
            email, tenant_id=tenant_id, role=role, is_active=is_active
        )
        runtime.auth.save_password(user.id, password)
        return user

    return _make


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
