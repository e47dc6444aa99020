"""Shared fakes for clamshell tests."""

from __future__ import annotations

import subprocess

import pytest

import clamshell
from clamshell import (
    DisplayState,
    InhibitorError,
    InhibitorHandle,
    LidState,
    ProbeError,
    SleepInhibitor,
    StateProbe,
)

CLOSED_ATTACHED = (LidState.CLOSED, DisplayState.EXTERNAL_ATTACHED)
OPEN_ATTACHED = (LidState.OPEN, DisplayState.EXTERNAL_ATTACHED)
CLOSED_ABSENT = (LidState.CLOSED, DisplayState.EXTERNAL_ABSENT)


class FakeProbe(StateProbe):
    """Returns queued samples; an exception in the queue is raised instead."""

    def __init__(self, *samples):
        self.samples = list(samples)
        self.calls = 0
        self.watchers = []

    def push(self, *samples):
        self.samples.extend(samples)

    def sample(self):
        self.calls += 1
        item = self.samples.pop(0) if len(self.samples) > 1 else self.samples[0]
        if isinstance(item, Exception):
            raise item
        return item

    def watch(self, callback):
        self.watchers.append(callback)


class FakeInhibitor(SleepInhibitor):
    """Counts backend acquire/release calls."""

    def __init__(self, fail_acquire=0, fail_release=0):
        super().__init__()
        self.acquired = 0
        self.released = 0
        self.fail_acquire = fail_acquire
        self.fail_release = fail_release

    def _acquire(self):
        if self.fail_acquire:
            self.fail_acquire -= 1
            raise InhibitorError("assertion denied")
        self.acquired += 1
        return InhibitorHandle(token=self.acquired)

    def _release(self, handle):
        if self.fail_release:
            self.fail_release -= 1
            raise InhibitorError("release denied")
        self.released += 1


@pytest.fixture
def probe():
    return FakeProbe(OPEN_ATTACHED)


@pytest.fixture
def inhibitor():
    return FakeInhibitor()


@pytest.fixture
def probe_error():
    return ProbeError("lid sensor unavailable")


class CommandRecorder:
    """Stands in for clamshell._run_command and records every call."""

    def __init__(self):
        self.calls = []
        self.results = {}

    def set_result(self, prefix, returncode=0, stdout="", stderr=""):
        self.results[tuple(prefix)] = (returncode, stdout, stderr)

    def __call__(self, cmd, timeout):
        self.calls.append(list(cmd))
        for prefix, (returncode, stdout, stderr) in self.results.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def commands(monkeypatch):
    recorder = CommandRecorder()
    monkeypatch.setattr(clamshell, "_run_command", recorder)
    return recorder


@pytest.fixture(autouse=True)
def no_systemd_env(monkeypatch):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    monkeypatch.delenv("WATCHDOG_USEC", raising=False)
