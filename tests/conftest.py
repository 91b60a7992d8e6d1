import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before teamsync.app builds its settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-automation-only-0123456789")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_ID", "test-google-client")
os.environ.setdefault("OAUTH_GOOGLE_CLIENT_SECRET", "test-google-secret")
os.environ.setdefault("FRONTEND_ORIGIN", "http://localhost:5173")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from teamsync.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
