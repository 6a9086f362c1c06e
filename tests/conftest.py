import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="addisverify_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("HASH_PEPPER", "test-pepper-for-testing-only")
os.environ.setdefault("SMS_PROVIDER", "log")
# Empty REDIS_URL keeps challenges in the process-local cache
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from addisverify.service.runtime import reset_runtime_for_tests  # noqa: E402


def _clear_memory_state() -> None:
    state_file = Path(os.environ["SHARED_FS_ROOT"]) / "state" / "memory_store.json"
    if state_file.exists():
        state_file.unlink()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
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
