import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Must be set before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("FRONTEND_ORIGIN", "http://localhost:5173")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessiongate.config import CookieSettings  # noqa: E402
from sessiongate.service.accounts import AccountService  # noqa: E402
from sessiongate.service.challenges import ChallengeService  # noqa: E402
from sessiongate.service.email import EmailService  # noqa: E402
from sessiongate.service.hashing import CredentialHasher  # noqa: E402
from sessiongate.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessiongate.service.sessions import SessionManager  # noqa: E402
from sessiongate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Controllable replacement for the services' UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailService(EmailService):
    """Captures outgoing challenge codes instead of sending them."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple] = []

    def send_challenge(self, flow, to_email, code) -> bool:
        self.sent.append((flow, to_email, code))
        return True

    def last_code(self, flow=None) -> str:
        for sent_flow, _, code in reversed(self.sent):
            if flow is None or sent_flow == flow:
                return code
        raise AssertionError(f"no code sent for {flow}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture(scope="session")
def hasher():
    return CredentialHasher()


@pytest.fixture
def cookie_settings():
    return CookieSettings(domain="example.com", secure=True)


@pytest.fixture
def sessions(store, hasher, cookie_settings, clock):
    return SessionManager(store, hasher, cookie_settings, clock=clock)


@pytest.fixture
def challenges(store, hasher, clock):
    return ChallengeService(store, hasher, clock=clock)


@pytest.fixture
def outbox():
    return RecordingEmailService()


@pytest.fixture
def accounts(store, hasher, sessions, challenges, outbox):
    return AccountService(store, hasher, sessions, challenges, outbox)

