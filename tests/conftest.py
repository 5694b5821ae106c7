import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before any import that builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="accountgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("TOKEN_HASH_SECRET", "test-token-hash-secret-for-automation-only-0123456789")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")
os.environ.setdefault("PASSWORD_RESET_MIN_RESPONSE_MS", "0")
os.environ["REDIS_URL"] = ""
os.environ.pop("DATABASE_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from accountgate.config import Settings  # noqa: E402
from accountgate.service.auth import AuthService  # noqa: E402
from accountgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from accountgate.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = os.environ["TOKEN_HASH_SECRET"]


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingDelivery:
    """Delivery double that remembers what was sent and can be told to fail."""

    def __init__(self):
        self.codes: list[tuple[str, str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.notices: list[str] = []
        self.fail = False
        self.raise_error = False

    def _outcome(self) -> bool:
        if self.raise_error:
            raise ConnectionError("smtp relay unreachable")
        return not self.fail

    def send_verification_code(self, to_email: str, code: str, purpose: str) -> bool:
        if self._outcome():
            self.codes.append((to_email, code, purpose))
            return True
        return False

    def send_password_reset(self, to_email: str, token: str) -> bool:
        if self._outcome():
            self.resets.append((to_email, token))
            return True
        return False

    def send_password_changed(self, to_email: str) -> bool:
        if self._outcome():
            self.notices.append(to_email)
            return True
        return False

    def last_code(self, email: str, purpose: str) -> str:
        for to_email, code, sent_purpose in reversed(self.codes):
            if to_email == email and sent_purpose == purpose:
                return code
        raise AssertionError(f"no {purpose} code sent to {email}")

    def last_reset_token(self, email: str) -> str:
        for to_email, token in reversed(self.resets):
            if to_email == email:
                return token
        raise AssertionError(f"no reset token sent to {email}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def settings():
    return Settings(
        use_memory_store=True,
        redis_url=None,
        test_mode=True,
        token_hash_secret=TEST_SECRET,
        password_reset_min_response_ms=0,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def observed():
    """Secrets seen through the code observer, keyed by (email, purpose)."""
    return {}


@pytest.fixture
def auth_service(memory_store, settings, delivery, clock, observed):
    def _observer(email: str, purpose: str, secret: str) -> None:
        observed[(email, purpose)] = secret

    return AuthService(
        memory_store,
        settings,
        delivery=delivery,
        code_observer=_observer,
        now=clock,
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
