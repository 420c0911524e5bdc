"""Sound machine engine — the single owner of playback and timer state.

Every mutation runs under one asyncio.Lock, including its process-spawn and
mixer side effects, the sleep-timer fire and the reconciliation after a player
process dies on its own. Each successful mutation ends with a broadcast of the
full snapshot.
"""
import asyncio
import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import psutil

from .config import DEFAULT_VOLUME, SOUNDS, TABS
from .errors import (
    AudioError, InvalidInput, InvalidTab, PlatformUnavailable, UnknownSound, format_error,
)
from .mixer import Mixer
from .player import Supervisor
from .timer import SleepTimer
from .utils import iso
from .web.state import Broadcaster

logger = logging.getLogger(__name__)


@dataclass
class PlaybackState:
    is_playing: bool = False
    current_sound: Optional[str] = None
    volume: float = DEFAULT_VOLUME
    active_tab: str = "play"


def clamp_volume(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput("volume must be a number between 0 and 1")
    if value != value:  # NaN
        raise InvalidInput("volume must be a number between 0 and 1")
    return max(0.0, min(1.0, float(value)))


class SoundMachine:
    def __init__(
        self,
        broadcaster: Broadcaster,
        capable: bool,
        supervisor: Optional[Supervisor] = None,
        mixer: Optional[Mixer] = None,
        timer: Optional[SleepTimer] = None,
    ):
        self.broadcaster = broadcaster
        self.capable = capable
        self.playback = PlaybackState()
        self.supervisor = supervisor or Supervisor()
        self.supervisor.on_exit = self._on_process_exit
        self.mixer = mixer or Mixer(capable)
        self.timer = timer or SleepTimer()
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    # ── Snapshot ─────────────────────────────────────────────────────────────

    def get_snapshot(self) -> dict:
        """Public view of the state. The timer's task handle never leaves the engine."""
        return {
            "isPlaying": self.playback.is_playing,
            "currentSound": self.playback.current_sound,
            "volume": self.playback.volume,
            "activeTab": self.playback.active_tab,
            "timer": self.timer.snapshot(),
            "isPi": self.capable,
        }

    async def status(self) -> dict:
        async with self._lock:
            was_playing = self.playback.is_playing
            if was_playing and not self.health_check():
                await self._broadcast()
            return self.get_snapshot()

    def health_check(self) -> bool:
        """Reconcile isPlaying against the real process. Cheap probe only."""
        if self.playback.is_playing and not self.supervisor.alive:
            logger.warning("State said playing but the player is gone — reconciling")
            self.supervisor.reap()
            self._mark_stopped()
            return False
        return self.playback.is_playing

    # ── Playback ─────────────────────────────────────────────────────────────

    async def play(self, sound) -> None:
        if not self.capable:
            raise PlatformUnavailable("Server audio unavailable")
        if not isinstance(sound, str) or sound not in SOUNDS:
            raise UnknownSound(sound)
        async with self._lock:
            await self._start_audio(sound)
            await self._broadcast()

    async def stop(self) -> None:
        if not self.capable:
            raise PlatformUnavailable("Server audio unavailable")
        async with self._lock:
            await self.supervisor.stop(kill_orphans=True)
            self._mark_stopped()
            await self._broadcast()

    async def set_volume(self, volume) -> bool:
        """Store the clamped volume and try to apply it. Returns whether the mixer took it."""
        value = clamp_volume(volume)
        async with self._lock:
            applied = await self._apply_volume(value)
            await self._broadcast()
            return applied

    async def set_tab(self, tab) -> str:
        if tab not in TABS:
            raise InvalidTab(tab)
        async with self._lock:
            previous = self.playback.active_tab
            self.playback.active_tab = tab
            # The timer tab starts silent
            if tab == "timer" and previous == "play" and self.playback.is_playing:
                await self.supervisor.stop(kill_orphans=True)
                self._mark_stopped()
            await self._broadcast()
            return tab

    # ── Sleep timer ──────────────────────────────────────────────────────────

    async def start_timer(self, sound, stop_time: datetime, volume=None) -> dict:
        """Play `sound` now and stop it at `stop_time`. All-or-nothing."""
        if not isinstance(sound, str) or sound not in SOUNDS:
            raise UnknownSound(sound)
        value = clamp_volume(volume) if volume is not None else None
        async with self._lock:
            lead = self.timer.lead_seconds(stop_time)
            self.timer.disarm()
            if value is not None:
                await self._apply_volume(value)
            if self.capable:
                await self._start_audio(sound)
            self.timer.arm(sound, stop_time, self._on_timer_fire)
            self.playback.active_tab = "timer"
            await self._broadcast()
            return {
                "sound": sound,
                "stopTime": iso(stop_time),
                "durationMinutes": round(lead / 60),
            }

    async def cancel_timer(self) -> None:
        async with self._lock:
            if self.timer.is_active:
                self.timer.disarm()
                if self.capable:
                    await self.supervisor.stop(kill_orphans=True)
                self._mark_stopped()
            await self._broadcast()

    async def _on_timer_fire(self, token: int):
        async with self._lock:
            if not self.timer.is_current(token):
                return
            logger.info("Timer expired — stopping %s", self.playback.current_sound)
            if self.capable:
                try:
                    await self.supervisor.stop(kill_orphans=True)
                except (OSError, psutil.Error) as e:
                    format_error("timer_fire", str(e))
            self._mark_stopped()
            self.timer.disarm()
            await self._broadcast()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def shutdown(self):
        """Stop everything before the process exits."""
        self.timer.disarm()
        self.kill_now()
        self.broadcaster.close_all()
        for task in list(self._background):
            task.cancel()

    def kill_now(self):
        self.supervisor.kill_now()
        self._mark_stopped()

    # ── Internals ────────────────────────────────────────────────────────────

    async def _start_audio(self, sound: str):
        try:
            await self.supervisor.start(sound)
        except AudioError:
            # The previous process is already gone; let clients see that
            self._mark_stopped()
            await self._broadcast()
            raise
        self.playback.is_playing = True
        self.playback.current_sound = sound

    async def _apply_volume(self, value: float) -> bool:
        self.playback.volume = value
        if not self.capable:
            return False
        return await self.mixer.set_volume(round(value * 100))

    def _mark_stopped(self):
        self.playback.is_playing = False
        self.playback.current_sound = None

    async def _broadcast(self):
        await self.broadcaster.broadcast(self.get_snapshot())

    def _on_process_exit(self, proc: subprocess.Popen):
        self._spawn(self._reconcile_exit(proc))

    async def _reconcile_exit(self, proc: subprocess.Popen):
        async with self._lock:
            if not self.supervisor.owns(proc):
                return
            self.supervisor.reap()
            self._mark_stopped()
            await self._broadcast()

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
