import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ADMIN_USERNAME", "admin")
os.environ.setdefault("ADMIN_PASSWORD", "secret")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tessera.service.auth import AuthService  # noqa: E402
from tessera.service.bindings import BindingReconciler  # noqa: E402
from tessera.service.broker import SessionBroker  # noqa: E402
from tessera.service.interceptor import AccessInterceptor  # noqa: E402
from tessera.service.pairing import PairingRegistry  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.service.tokens import TokenLedger  # noqa: E402
from tessera.storage.common import extend_core_schema  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeConnection:
    """In-memory console connection that records pushed events."""

    def __init__(self, headers=None, remote_address="127.0.0.1"):
        self.auth = None
        self.events = []
        self.headers = headers if headers is not None else {"user-agent": "pytest"}
        self.remote_address = remote_address
        self.close_handlers = []

    async def send(self, event):
        self.events.append(event)

    def on_close(self, callback):
        self.close_handlers.append(callback)

    def remove_close_handler(self, callback):
        if callback in self.close_handlers:
            self.close_handlers.remove(callback)

    def close(self):
        for handler in list(self.close_handlers):
            handler()

    @property
    def user(self):
        """Value of the most recent ``user`` data event."""
        events = [event for event in self.events if event["body"]["key"] == "user"]
        assert events, "no session snapshot was pushed"
        return events[-1]["body"]["value"]


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    memory_store = MemoryStore(fs_root=str(tmp_path / "store"))
    asyncio.run(extend_core_schema(memory_store))
    return memory_store


@pytest.fixture
def services(store, clock):
    """Wire the auth components over the memory store with a controllable clock."""
    tokens = TokenLedger(store, auth_token_expire=60 * 60 * 1000, clock=clock)
    pairing = PairingRegistry(login_token_expire=60 * 1000, clock=clock)
    broker = SessionBroker(store, tokens)
    bindings = BindingReconciler(store)
    auth = AuthService(store, tokens=tokens, pairing=pairing, broker=broker, bindings=bindings)
    return SimpleNamespace(
        store=store,
        clock=clock,
        tokens=tokens,
        pairing=pairing,
        broker=broker,
        interceptor=AccessInterceptor(tokens, clock=clock),
        bindings=bindings,
        auth=auth,
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
