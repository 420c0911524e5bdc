"""Error taxonomy + structured error logging (JSON to errors.log)."""
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from .config import ERRORS_LOG, OUTPUT_DIR, DEV_MODE

logger = logging.getLogger(__name__)


class SoundMachineError(Exception):
    status_code = 500


class InvalidInput(SoundMachineError):
    """User-correctable request problem (bad sound, tab, volume or time)."""
    status_code = 400


class UnknownSound(InvalidInput):
    def __init__(self, sound):
        super().__init__(f"Unknown sound: {sound}")
        self.sound = sound


class InvalidTab(InvalidInput):
    def __init__(self, tab):
        super().__init__("Invalid tab")
        self.tab = tab


class PastOrTooSoon(InvalidInput):
    pass


class AudioError(SoundMachineError):
    """The player subprocess could not be started."""


class SpawnFailure(AudioError):
    pass


class AssetNotFound(AudioError):
    def __init__(self, path):
        super().__init__(f"Audio file not found: {path}")
        self.path = path


class PlatformUnavailable(SoundMachineError):
    """No server-side audio on this host. Clients play locally instead."""
    status_code = 200


class SubscriberWriteFailure(SoundMachineError):
    pass


_FRIENDLY_MESSAGES = {
    "audio_start": "Couldn't start the sound.",
    "timer_start": "Failed to start audio for timer",
    "timer_fire": "Sleep timer stop failed.",
    "request": "Something went wrong handling that request.",
}


def format_error(
    stage: str,
    raw: str = "",
    params: Optional[dict] = None,
) -> str:
    entry = {
        "timestamp": datetime.now().isoformat(),
        "stage": stage,
        "params": params,
        "error": raw,
        "python": sys.version.split()[0],
    }

    _append_to_log(entry)
    logger.error("Error at %s: %s", stage, raw)

    if DEV_MODE:
        return raw or _FRIENDLY_MESSAGES.get(stage, stage)
    return _FRIENDLY_MESSAGES.get(stage, f"Something went wrong ({stage}).")


def _append_to_log(entry: dict):
    try:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        with open(ERRORS_LOG, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError:
        pass
