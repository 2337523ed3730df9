import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports chatcore settings
_test_tmp_dir = tempfile.mkdtemp(prefix="chatcore_test_")
os.environ.setdefault("SANDBOX_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SANDBOX_JAIL_BINARY", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from chatcore.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user_session(store):
    """A user plus a live session token in ``store``."""
    user = store.create_user("alice@example.com", tenant_id="acme", plan_tier="free")
    session = store.create_session(user.id, tenant_id="acme")
    return user, session


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
