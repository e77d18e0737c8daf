import asyncio
import inspect
import os
import sys
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="authflow_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# Codes stay in process memory so tests never share state through Redis
os.environ.setdefault("USE_REDIS_CODES", "false")
os.environ.setdefault(
    "TOKEN_SECRET",
    "test-token-secret-for-automation-only-0123456789-abcdefghijklmnopqrstuvwxyz",
)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authflow.config import Settings  # noqa: E402
from authflow.service.auth import AuthService  # noqa: E402
from authflow.service.credentials import PasswordCredentialVerifier  # noqa: E402
from authflow.service.runtime import reset_runtime_for_tests  # noqa: E402
from authflow.storage.memory import MemoryCodeStore, MemoryStore  # noqa: E402

TEST_SECRET = os.environ["TOKEN_SECRET"]
USER_PASSWORD = "CorrectHorse42!"


class FakeClock:
    """Deterministic clock; call to read, ``advance`` to move forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailer:
    """Email dispatcher that keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        # Thread each send ran on, in send order
        self.threads: list[int] = []

    def _record(self, message: dict) -> bool:
        self.sent.append(message)
        self.threads.append(threading.get_ident())
        return True

    def send_account_activation(self, to_email, token, locale=None):
        return self._record(
            {"kind": "activation", "to": to_email, "token": token, "locale": locale}
        )

    def send_password_reset(self, to_email, token, locale=None):
        return self._record(
            {"kind": "password_reset", "to": to_email, "token": token, "locale": locale}
        )

    def send_email_change_confirmation(self, new_email, old_email, token, locale=None):
        return self._record(
            {
                "kind": "email_change",
                "to": new_email,
                "old": old_email,
                "token": token,
                "locale": locale,
            }
        )

    def send_two_factor_code(self, to_email, code, locale=None):
        return self._record(
            {"kind": "two_factor_code", "to": to_email, "code": code, "locale": locale}
        )

    def last(self, kind: str) -> dict:
        return [m for m in self.sent if m["kind"] == kind][-1]


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
        token_secret=TEST_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        verification_token_ttl_minutes=60,
        recovery_code_count=5,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def code_store(clock):
    return MemoryCodeStore(clock=clock)


@pytest.fixture
def emailer():
    return RecordingEmailer()


@pytest.fixture
def verifier(memory_store):
    return PasswordCredentialVerifier(memory_store)


@pytest.fixture
def auth_service(memory_store, code_store, settings, verifier, emailer, clock):
    return AuthService(
        memory_store,
        code_store,
        settings,
        verifier=verifier,
        emailer=emailer,
        clock=clock,
    )


@pytest.fixture
def password():
    return USER_PASSWORD


@pytest.fixture
def verified_user(memory_store, verifier):
    user = memory_store.create_user("alice@example.com", "alice", email_verified=True)
    verifier.save_password(user.id, USER_PASSWORD)
    return user


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
