"""Test doubles for the note tree engine.

FakeClock lets tests step through history and audit windows without
sleeping. Every call returns the current fake time; `advance` moves it.
"""
import datetime
from datetime import timezone

DEFAULT_START = datetime.datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

# A fixed 256-bit key; never use outside tests
TEST_KEY = bytes(range(32))
OTHER_KEY = bytes(range(1, 33))


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime.datetime = DEFAULT_START) -> None:
        self.now = start
        self.calls = 0

    def __call__(self) -> datetime.datetime:
        self.calls += 1
        return self.now

    def advance(self, seconds: float) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(seconds=seconds)
        return self.now
