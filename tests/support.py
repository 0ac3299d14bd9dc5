"""
tests/support.py -- Test doubles and constants shared by the test modules.

Fixtures live in conftest.py; plain helpers that tests import by name live here.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.models import User
from auth.notify import NotificationError, TemplateKind

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"
PASSWORD = "correct horse battery staple"


class FakeClock:
    """Manually advanced clock. Starts at the real current time so JWT expiry
    checks (which python-jose does against the wall clock) still pass."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Captures every send so tests can read the delivered code."""

    def __init__(self) -> None:
        self.sent: list[tuple[User, str, TemplateKind]] = []

    def send(self, user: User, code: str, kind: TemplateKind) -> None:
        self.sent.append((user, code, kind))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class FailingNotifier:
    def __init__(self) -> None:
        self.calls = 0

    def send(self, user: User, code: str, kind: TemplateKind) -> None:
        self.calls += 1
        raise NotificationError("mail server unreachable")
