"""Pytest configuration - shared fixtures for scheduler tests.

ManualClock stands in for ThreadClock: time only moves when a test calls
advance()/advance_to(), and due callbacks run in time order on the test's
own thread.
"""
from __future__ import annotations

import itertools

import pytest

import loopscript as ls


class _ManualHandle:
    def __init__(self, when, seq, fn):
        self.when = when
        self.seq = seq
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualClock:
    """Deterministic clock: now() and call_at() like ThreadClock."""

    def __init__(self, start=0.0):
        self._now = start
        self._handles = []
        self._seq = itertools.count()

    def now(self):
        return self._now

    def call_at(self, when, fn):
        handle = _ManualHandle(when, next(self._seq), fn)
        self._handles.append(handle)
        return handle

    @property
    def live_timers(self):
        return [h for h in self._handles if not h.cancelled]

    def advance(self, seconds):
        self.advance_to(self._now + seconds)

    def advance_to(self, target):
        """Run every callback due at or before `target`, including ones added meanwhile."""
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self._now = max(self._now, handle.when)
            handle.fn()
        self._now = max(self._now, target)


class RecordingSounder:
    """Records every sound() call; raises for values listed in `fail_on`."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def sound(self, value, onset, duration):
        if value in self.fail_on:
            raise RuntimeError(f"no sample for {value}")
        self.calls.append((value, onset, duration))

    @property
    def values(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sounder():
    return RecordingSounder()


@pytest.fixture
def scheduler(clock, sounder):
    sched = ls.Scheduler(sounder, cps=1.0, clock=clock)
    yield sched
    sched.stop()


@pytest.fixture(autouse=True)
def quiet_debug():
    """Leave debug logging off between tests."""
    yield
    ls.debug(False, level=1)
