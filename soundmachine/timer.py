"""Sleep timer — one pending stop, owned by a cancellation token.

The timer itself never touches audio. It only holds
``{isActive, selectedSound, stopTime}`` and the deferred task that calls back
into the engine at ``stopTime``. Every arm bumps a generation counter, so a
fire that was already waiting on the engine lock when it got replaced or
cancelled can tell it is stale and do nothing.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .config import TIMER_MIN_LEAD
from .errors import PastOrTooSoon
from .utils import iso, utcnow

logger = logging.getLogger(__name__)

FireCallback = Callable[[int], Awaitable[None]]


class SleepTimer:
    def __init__(self, min_lead: float = TIMER_MIN_LEAD):
        self.min_lead = min_lead
        self.is_active: bool = False
        self.selected_sound: Optional[str] = None
        self.stop_time: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._token: int = 0

    def lead_seconds(self, stop_time: datetime, now: Optional[datetime] = None) -> float:
        """Seconds until stop_time. Raises PastOrTooSoon unless it is more than min_lead away."""
        now = now or utcnow()
        lead = (stop_time - now).total_seconds()
        if lead <= self.min_lead:
            raise PastOrTooSoon(
                f"Stop time must be in the future. Current: {iso(now)}, Requested: {iso(stop_time)}"
            )
        return lead

    def arm(self, sound: Optional[str], stop_time: datetime, on_fire: FireCallback) -> int:
        """Replace any pending fire with a new one at stop_time. Returns the new token."""
        self.disarm()
        self._token += 1
        token = self._token
        delay = max(0.0, (stop_time - utcnow()).total_seconds())

        async def _wait():
            await asyncio.sleep(delay)
            await on_fire(token)

        self.is_active = True
        self.selected_sound = sound
        self.stop_time = stop_time
        self._task = asyncio.create_task(_wait())
        logger.info("Timer armed: %s until %s (%.0fs)", sound, iso(stop_time), delay)
        return token

    def disarm(self):
        """Cancel the pending fire and reset to Idle. Safe to call when Idle."""
        task = self._task
        self._task = None
        self._token += 1
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if self.is_active:
            logger.info("Timer disarmed")
        self.is_active = False
        self.selected_sound = None
        self.stop_time = None

    def is_current(self, token: int) -> bool:
        return self.is_active and token == self._token

    @property
    def pending(self) -> int:
        """Number of outstanding fire tasks (0 or 1)."""
        return int(self._task is not None and not self._task.done())

    def remaining(self, now: Optional[datetime] = None) -> Optional[float]:
        if not self.is_active or self.stop_time is None:
            return None
        now = now or utcnow()
        return max(0.0, (self.stop_time - now).total_seconds())

    def snapshot(self) -> dict:
        return {
            "isActive": self.is_active,
            "selectedSound": self.selected_sound,
            "stopTime": iso(self.stop_time) if self.stop_time else None,
        }
