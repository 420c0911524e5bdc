"""System volume via ALSA amixer."""
import asyncio
import logging
import shutil
import subprocess

from .config import MIXER_BINARY, MIXER_CARD, MIXER_CONTROLS, MIXER_TIMEOUT

logger = logging.getLogger(__name__)


class Mixer:
    def __init__(self, capable: bool, controls: list[str] = MIXER_CONTROLS, card: int = MIXER_CARD):
        self.capable = capable
        self.controls = list(controls)
        self.card = card
        self.last_control: str | None = None

    async def set_volume(self, percent: int) -> bool:
        """Apply `percent` to the first control that accepts it. Never raises."""
        if not self.capable or shutil.which(MIXER_BINARY) is None:
            return False
        percent = max(0, min(100, int(percent)))
        loop = asyncio.get_running_loop()
        for control in self.controls:
            ok = await loop.run_in_executor(None, self._try_control, control, percent)
            if ok:
                if control != self.last_control:
                    logger.info("Mixer control in use: %s", control)
                self.last_control = control
                return True
        logger.warning("No mixer control accepted volume %d%%", percent)
        return False

    def _try_control(self, control: str, percent: int) -> bool:
        try:
            result = subprocess.run(
                [MIXER_BINARY, "-c", str(self.card), "sset", control, f"{percent}%"],
                capture_output=True, timeout=MIXER_TIMEOUT,
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired):
            return False
