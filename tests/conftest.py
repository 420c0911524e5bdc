"""Shared fixtures and fakes.

The engine tests swap the real player process and mixer for in-memory fakes,
so state transitions can be checked without audio hardware. Supervisor tests
in test_player.py spawn a real (sleeping) child process instead.
"""
import asyncio

import pytest

from soundmachine import errors
from soundmachine.config import SOUNDS
from soundmachine.engine import SoundMachine
from soundmachine.errors import SpawnFailure, UnknownSound
from soundmachine.timer import SleepTimer
from soundmachine.web.state import Broadcaster


@pytest.fixture(autouse=True)
def error_log(tmp_path, monkeypatch):
    """Keep format_error from writing into the project's output/ dir."""
    log = tmp_path / "output" / "errors.log"
    monkeypatch.setattr(errors, "OUTPUT_DIR", log.parent)
    monkeypatch.setattr(errors, "ERRORS_LOG", log)
    return log


@pytest.fixture
def audio_dir(tmp_path):
    d = tmp_path / "audio"
    d.mkdir()
    for filename, _ in SOUNDS.values():
        (d / filename).write_bytes(b"ID3")
    return d


class FakeProc:
    _next_pid = 40000

    def __init__(self):
        FakeProc._next_pid += 1
        self.pid = FakeProc._next_pid
        self.returncode = None


class FakeSupervisor:
    """Stands in for player.Supervisor — same surface, no processes."""

    def __init__(self, delay: float = 0.0):
        self.on_exit = None
        self.delay = delay
        self.fail_with = None
        self.proc = None
        self.sound = None
        self.starts = []
        self.stops = []
        self.killed = False

    async def start(self, sound):
        self.starts.append(sound)
        await self.stop(kill_orphans=False)
        if sound not in SOUNDS:
            raise UnknownSound(sound)
        await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.proc = FakeProc()
        self.sound = sound

    async def stop(self, kill_orphans=True):
        self.stops.append(kill_orphans)
        self.proc = None
        self.sound = None
        await asyncio.sleep(self.delay)

    @property
    def alive(self):
        return self.proc is not None and self.proc.returncode is None

    def reap(self):
        if self.proc is not None and not self.alive:
            self.proc = None
            self.sound = None

    def owns(self, proc):
        return proc is self.proc

    def kill_now(self):
        self.killed = True
        self.proc = None
        self.sound = None

    def crash(self):
        """Simulate the player dying on its own."""
        proc = self.proc
        proc.returncode = 1
        self.on_exit(proc)


class FakeMixer:
    def __init__(self, accepts: bool = True):
        self.accepts = accepts
        self.levels = []

    async def set_volume(self, percent):
        self.levels.append(percent)
        return self.accepts


def drain(sub) -> list:
    """Everything queued for a subscriber so far."""
    items = []
    while not sub.queue.empty():
        items.append(sub.queue.get_nowait())
    return items


@pytest.fixture
def make_machine():
    def _make(capable=True, delay=0.0, mixer_accepts=True):
        supervisor = FakeSupervisor(delay=delay)
        machine = SoundMachine(
            Broadcaster(),
            capable=capable,
            supervisor=supervisor,
            mixer=FakeMixer(mixer_accepts),
            timer=SleepTimer(),
        )
        return machine
    return _make


def spawn_failure():
    return SpawnFailure("Failed to start mpg123: [Errno 2] No such file or directory")
