"""Audio playback via a looping mpg123 process."""
import asyncio
import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Callable, Optional

import psutil

from .config import (
    AUDIO_DIR, SOUNDS, PLAYER_BINARY, PLAYER_OUTPUT, PLAYER_SCALE,
    STOP_GRACE, ORPHAN_SETTLE,
)
from .errors import UnknownSound, AssetNotFound, SpawnFailure

logger = logging.getLogger(__name__)


def asset_path(sound: str, audio_dir: Path = AUDIO_DIR) -> Path:
    """Resolve a sound id to its MP3 on disk. Raises UnknownSound / AssetNotFound."""
    entry = SOUNDS.get(sound) if isinstance(sound, str) else None
    if entry is None:
        raise UnknownSound(sound)
    path = audio_dir / entry[0]
    if not path.is_file():
        raise AssetNotFound(path)
    return path


class Supervisor:
    """Owns at most one player subprocess.

    ``on_exit`` is called with the ``Popen`` whenever a process exits without
    the supervisor having asked it to (crash, external kill, natural EOF).
    """

    def __init__(
        self,
        on_exit: Optional[Callable[[subprocess.Popen], None]] = None,
        audio_dir: Path = AUDIO_DIR,
        binary: str = PLAYER_BINARY,
        grace: float = STOP_GRACE,
        settle: float = ORPHAN_SETTLE,
    ):
        self.on_exit = on_exit
        self.audio_dir = audio_dir
        self.binary = binary
        self.grace = grace
        self.settle = settle
        self._proc: Optional[subprocess.Popen] = None
        self._sound: Optional[str] = None
        self._stopping: set[int] = set()
        self._watcher_task: Optional[asyncio.Task] = None

    # ── Playback ───────────────────────────────────────────────────────────────

    def command(self, path: Path) -> list[str]:
        return [
            self.binary,
            "-o", PLAYER_OUTPUT,
            "--loop", "-1",
            "-f", str(PLAYER_SCALE),
            "-q",
            str(path),
        ]

    async def start(self, sound: str):
        """Start looping `sound`. Stops any current process first (orphans are left alone)."""
        await self.stop(kill_orphans=False)
        path = asset_path(sound, self.audio_dir)
        try:
            proc = subprocess.Popen(
                self.command(path),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            self._proc = None
            self._sound = None
            raise SpawnFailure(f"Failed to start {self.binary}: {e}") from e

        self._proc = proc
        self._sound = sound
        logger.info("Player started: %s (pid %d)", sound, proc.pid)

        # Reactive watcher — waits for the process to exit, then reports it
        async def _watch():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, proc.wait)
            self._handle_exit(proc)

        self._watcher_task = asyncio.create_task(_watch())

    async def stop(self, kill_orphans: bool = True):
        """Terminate the owned process, then optionally reap stray players."""
        stopped_pid = None
        proc = self._proc
        if proc is not None:
            stopped_pid = proc.pid
            # An already-exited process has no exit left to suppress
            if proc.poll() is None:
                self._stopping.add(proc.pid)
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            self._proc = None
            self._sound = None
            logger.info("Player stopped (pid %d)", stopped_pid)
            await asyncio.sleep(self.grace)

        if kill_orphans:
            if self.kill_orphans(exclude=stopped_pid):
                await asyncio.sleep(self.settle)

    def kill_orphans(self, exclude: Optional[int] = None) -> int:
        """Terminate other processes named like the player binary. Returns how many."""
        skip = {os.getpid(), exclude}
        name = Path(self.binary).name
        killed = 0
        for proc in psutil.process_iter(["pid", "name"]):
            if proc.info["pid"] in skip or proc.info["name"] != name:
                continue
            try:
                proc.terminate()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if killed:
            logger.warning("Killed %d orphaned %s process(es)", killed, name)
        return killed

    def kill_now(self):
        """Synchronous stop for signal handlers and interpreter exit."""
        proc = self._proc
        self._proc = None
        self._sound = None
        if proc is None or proc.poll() is not None:
            return
        self._stopping.add(proc.pid)
        proc.terminate()
        try:
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()

    # ── Health ─────────────────────────────────────────────────────────────────

    @property
    def alive(self) -> bool:
        """Signal-probe the owned process (no blocking calls)."""
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return False
        try:
            os.kill(proc.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def reap(self):
        """Forget a dead handle."""
        if self._proc is not None and not self.alive:
            logger.warning("Player pid %d is gone", self._proc.pid)
            self._proc = None
            self._sound = None

    def owns(self, proc: subprocess.Popen) -> bool:
        return proc is self._proc

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def sound(self) -> Optional[str]:
        return self._sound

    def _handle_exit(self, proc: subprocess.Popen):
        if proc.pid in self._stopping:
            self._stopping.discard(proc.pid)
            return
        if proc.returncode in (-signal.SIGTERM, -signal.SIGKILL) and not self.owns(proc):
            return
        logger.warning("Player pid %d exited on its own (code %s)", proc.pid, proc.returncode)
        if self.on_exit:
            self.on_exit(proc)
