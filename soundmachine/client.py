"""Sync client — mirrors server state over SSE, falls back to polling.

Every snapshot from the server replaces the mirror wholesale. The one
exception is volume: while the user is moving the slider, server pushes must
not yank it back, so a timed suppression window keeps the local value.

User actions are optimistic. The mirror changes first, then the request goes
out; a failed request is reported and the next snapshot puts things right.
When the server has no audio hardware (``isPi`` false) playback runs through
a LocalPlayer instead.
"""
import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import httpx

from .config import (
    DEFAULT_VOLUME, POLL_INTERVAL, PUSH_CONFIRM_TIMEOUT, SOUNDS, TABS,
    VOLUME_COMMIT_HOLD, VOLUME_DEBOUNCE, VOLUME_JITTER, VOLUME_RELEASE_HOLD,
)
from .errors import InvalidInput, InvalidTab, UnknownSound
from .utils import fmt_remaining, iso, next_alarm, parse_timestamp

logger = logging.getLogger(__name__)


def audio_url(sound: str) -> str:
    return f"/audio/{SOUNDS[sound][0]}"


def default_state() -> dict:
    return {
        "isPlaying": False,
        "currentSound": None,
        "volume": DEFAULT_VOLUME,
        "activeTab": "play",
        "timer": {"isActive": False, "selectedSound": None, "stopTime": None},
        "isPi": False,
    }


class LocalPlayer(ABC):
    """Plays sounds on the client itself when the server can't."""

    @abstractmethod
    def play(self, url: str, volume: float) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    def set_volume(self, volume: float) -> None:
        pass  # players without volume control ignore it


class VolumeSuppression:
    """Window during which server volume must not overwrite the local slider.

    begin()   — interaction started; held until ended
    release() — interaction ended; held for a short while longer
    commit()  — debounced value was sent; held briefly for the echo
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._holding = False
        self._until = 0.0

    def begin(self):
        self._holding = True

    def release(self, hold: float = VOLUME_RELEASE_HOLD):
        self._end(hold)

    def commit(self, hold: float = VOLUME_COMMIT_HOLD):
        self._end(hold)

    def clear(self):
        self._holding = False
        self._until = 0.0

    def _end(self, hold: float):
        self._holding = False
        self._until = max(self._until, self._clock() + hold)

    @property
    def active(self) -> bool:
        return self._holding or self._clock() < self._until


@dataclass
class ClientMirror:
    state: dict = field(default_factory=default_state)
    selected_sound: Optional[str] = None
    selected_time: Optional[datetime] = None
    suppression: VolumeSuppression = field(default_factory=VolumeSuppression)

    def apply(self, snapshot: dict):
        local_volume = self.state.get("volume")
        self.state = dict(snapshot)
        server_volume = snapshot.get("volume")
        if local_volume is None or server_volume is None:
            return
        if self.suppression.active or abs(local_volume - server_volume) <= VOLUME_JITTER:
            self.state["volume"] = local_volume

    @property
    def is_pi(self) -> bool:
        return bool(self.state.get("isPi"))

    @property
    def timer_active(self) -> bool:
        return bool((self.state.get("timer") or {}).get("isActive"))

    @property
    def can_start_timer(self) -> bool:
        return bool(self.selected_sound and self.selected_time) and not self.timer_active

    def remaining_text(self, now: Optional[datetime] = None) -> Optional[str]:
        timer = self.state.get("timer") or {}
        if not timer.get("isActive") or not timer.get("stopTime"):
            return None
        return fmt_remaining(parse_timestamp(timer["stopTime"]), now)


class SyncClient:
    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        local_player: Optional[LocalPlayer] = None,
        on_change: Optional[Callable[[ClientMirror], None]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
        http: Optional[httpx.AsyncClient] = None,
        poll_interval: float = POLL_INTERVAL,
        confirm_timeout: float = PUSH_CONFIRM_TIMEOUT,
        debounce: float = VOLUME_DEBOUNCE,
    ):
        self.http = http or httpx.AsyncClient(base_url=base_url, timeout=10)
        self._owns_http = http is None
        self.local_player = local_player
        self.on_change = on_change
        self.on_error = on_error
        self.poll_interval = poll_interval
        self.confirm_timeout = confirm_timeout
        self.debounce = debounce
        self.mirror = ClientMirror()
        self.push_live = False
        self._running = False
        self._push_task: Optional[asyncio.Task] = None
        self._volume_task: Optional[asyncio.Task] = None

    # ── Sync loop ────────────────────────────────────────────────────────────

    async def run(self):
        """Keep the mirror current until close(). Polls only while push is down."""
        self._running = True
        self._push_task = asyncio.create_task(self._push_loop())
        try:
            await asyncio.sleep(self.confirm_timeout)
            while self._running:
                if not self.push_live:
                    await self.refresh()
                await asyncio.sleep(self.poll_interval)
        finally:
            self._push_task.cancel()

    async def _push_loop(self):
        while self._running:
            try:
                await self.listen()
            except (httpx.HTTPError, ValueError) as e:
                logger.debug("Push stream failed: %s", e)
            self.push_live = False
            if self._running:
                await asyncio.sleep(self.poll_interval)

    async def listen(self):
        """Consume the SSE stream until the server closes it."""
        timeout = httpx.Timeout(10.0, read=None)
        async with self.http.stream("GET", "/api/events", timeout=timeout) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                snapshot = json.loads(line[5:].strip())
                if not self.push_live:
                    logger.info("Push connected")
                self.push_live = True
                self.apply(snapshot)
        logger.info("Push stream closed")

    async def refresh(self) -> bool:
        """Pull one snapshot from /api/status."""
        try:
            response = await self.http.get("/api/status")
            response.raise_for_status()
            snapshot = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._report("status", str(e))
            return False
        self.apply(snapshot)
        return True

    def apply(self, snapshot: dict):
        self.mirror.apply(snapshot)
        self._changed()

    async def close(self):
        self._running = False
        for task in (self._push_task, self._volume_task):
            if task and not task.done():
                task.cancel()
        if self._owns_http:
            await self.http.aclose()

    # ── Playback actions ─────────────────────────────────────────────────────

    async def play(self, sound: str) -> bool:
        if sound not in SOUNDS:
            raise UnknownSound(sound)
        state = self.mirror.state
        if not self.mirror.is_pi:
            return self._play_locally(sound)
        state["isPlaying"] = True
        state["currentSound"] = sound
        self._changed()
        return await self._post("/api/play", {"sound": sound}) is not None

    async def stop(self) -> bool:
        state = self.mirror.state
        state["isPlaying"] = False
        state["currentSound"] = None
        if not self.mirror.is_pi:
            if self.local_player:
                self.local_player.stop()
            self._changed()
            return True
        self._changed()
        return await self._post("/api/stop") is not None

    async def toggle(self, sound: str) -> bool:
        """Sound button: stop if this sound is playing, otherwise play it."""
        state = self.mirror.state
        if state.get("isPlaying") and state.get("currentSound") == sound:
            return await self.stop()
        return await self.play(sound)

    def _play_locally(self, sound: str) -> bool:
        if self.local_player is None:
            self._report("play", "No local player available")
            return False
        if self.mirror.state.get("isPlaying"):
            self.local_player.stop()
        try:
            self.local_player.play(audio_url(sound), self.mirror.state.get("volume", DEFAULT_VOLUME))
        except OSError as e:
            self._report("play", str(e))
            return False
        self.mirror.state["isPlaying"] = True
        self.mirror.state["currentSound"] = sound
        self._changed()
        return True

    async def set_tab(self, tab: str) -> bool:
        if tab not in TABS:
            raise InvalidTab(tab)
        self.mirror.state["activeTab"] = tab
        self._changed()
        return await self._post("/api/tab", {"tab": tab}) is not None

    # ── Volume ───────────────────────────────────────────────────────────────

    def press_volume(self):
        self.mirror.suppression.begin()

    def release_volume(self):
        self.mirror.suppression.release()

    def adjust_volume(self, volume: float):
        """Slider moved. Updates locally now, sends after the debounce delay."""
        volume = max(0.0, min(1.0, float(volume)))
        self.mirror.suppression.begin()
        self.mirror.state["volume"] = volume
        self._changed()
        if self._volume_task and not self._volume_task.done():
            self._volume_task.cancel()
        self._volume_task = asyncio.create_task(self._send_volume(volume))
        return self._volume_task

    async def _send_volume(self, volume: float):
        await asyncio.sleep(self.debounce)
        if self.mirror.is_pi:
            await self._post("/api/volume", {"volume": volume})
        elif self.local_player:
            self.local_player.set_volume(volume)
        self.mirror.suppression.commit()

    # ── Timer ────────────────────────────────────────────────────────────────

    def select_timer_sound(self, sound: str):
        if sound not in SOUNDS:
            raise UnknownSound(sound)
        self.mirror.selected_sound = sound
        self._changed()

    def select_alarm(self, hour: int, minute: int, now: Optional[datetime] = None) -> datetime:
        self.mirror.selected_time = next_alarm(hour, minute, now)
        self._changed()
        return self.mirror.selected_time

    async def start_timer(self) -> bool:
        mirror = self.mirror
        if not mirror.selected_sound or not mirror.selected_time:
            raise InvalidInput("Please select a sound and stop time")
        stop_time = iso(mirror.selected_time)
        mirror.state["timer"] = {
            "isActive": True,
            "selectedSound": mirror.selected_sound,
            "stopTime": stop_time,
        }
        mirror.state["activeTab"] = "timer"
        self._changed()
        result = await self._post("/api/timer/start", {
            "sound": mirror.selected_sound,
            "stopTime": stop_time,
            "volume": mirror.state.get("volume", DEFAULT_VOLUME),
        })
        return result is not None

    async def cancel_timer(self) -> bool:
        self.mirror.state["timer"] = {"isActive": False, "selectedSound": None, "stopTime": None}
        self.mirror.state["isPlaying"] = False
        self.mirror.state["currentSound"] = None
        self._changed()
        return await self._post("/api/timer/cancel") is not None

    # ── Internals ────────────────────────────────────────────────────────────

    async def _post(self, path: str, payload: Optional[dict] = None) -> Optional[dict]:
        try:
            response = await self.http.post(path, json=payload if payload is not None else {})
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._report(path, str(e))
            return None
        if response.status_code >= 400:
            self._report(path, data.get("error", f"HTTP {response.status_code}"))
            return None
        # Without push, pick up the server's view straight away
        if not self.push_live:
            await self.refresh()
        return data

    def _report(self, action: str, message: str):
        logger.warning("%s failed: %s", action, message)
        if self.on_error:
            self.on_error(action, message)

    def _changed(self):
        if self.on_change:
            self.on_change(self.mirror)
