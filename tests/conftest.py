import threading
import time

import pytest

from logrelay.mappings import UserMapping
from logrelay.models import RawLine


class RecordingSink:
    """Collects delivered events. `failures` is a list of exceptions raised in order."""

    def __init__(self, failures=None):
        self.events = []
        self.attempts = 0
        self.failures = list(failures or [])
        self.delivered = threading.Event()
        self.closed = False
        self._lock = threading.Lock()

    def send(self, event):
        with self._lock:
            self.attempts += 1
            if self.failures:
                raise self.failures.pop(0)
            self.events.append(event)
        self.delivered.set()

    def close(self):
        self.closed = True

    def messages(self):
        with self._lock:
            return [e.message for e in self.events]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def mapping():
    return UserMapping({"u123": "Alice", "u456": "Bob"})


def make_line(text, source="/logs/game.log", start=0, segment=0):
    end = start + len(text.encode("utf-8")) + 1
    return RawLine(
        source_file=source,
        text=text,
        offset_range=(start, end),
        identity=(1, 42),
        segment=segment,
        read_at="2024-01-15T10:30:00+00:00",
    )


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll `predicate` until it returns truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
