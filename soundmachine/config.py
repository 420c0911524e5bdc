"""Config & Constants"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root (one level up from soundmachine/)
_ROOT = Path(__file__).parent.parent
load_dotenv(_ROOT / ".env")

# ─── Paths ────────────────────────────────────────────────────────────────────
ROOT_DIR = _ROOT
PUBLIC_DIR = ROOT_DIR / os.getenv("PUBLIC_DIR", "public")
AUDIO_DIR = PUBLIC_DIR / "audio"
OUTPUT_DIR = ROOT_DIR / os.getenv("OUTPUT_DIR", "output")
ERRORS_LOG = OUTPUT_DIR / "errors.log"

# ─── Sounds ───────────────────────────────────────────────────────────────────
# id -> (asset file, display name)
SOUNDS = {
    "white": ("white-noise.mp3", "White Noise"),
    "brown": ("brown-noise.mp3", "Brown Noise"),
    "pink": ("pink-noise.mp3", "Pink Noise"),
    "dryer": ("dryer-noise.mp3", "Dryer Sound"),
    "ocean": ("ocean-noise.mp3", "Ocean Waves"),
}
TABS = ("play", "timer")

# ─── Player process ───────────────────────────────────────────────────────────
PLAYER_BINARY = os.getenv("PLAYER_BINARY", "mpg123")
PLAYER_OUTPUT = os.getenv("PLAYER_OUTPUT", "alsa")
PLAYER_SCALE = int(os.getenv("PLAYER_SCALE", "32768"))
STOP_GRACE = float(os.getenv("STOP_GRACE", "0.2"))        # seconds after SIGTERM
ORPHAN_SETTLE = float(os.getenv("ORPHAN_SETTLE", "0.1"))  # seconds after orphan kill

# ─── Mixer ────────────────────────────────────────────────────────────────────
ASOUND_CARDS = Path(os.getenv("ASOUND_CARDS", "/proc/asound/cards"))
MIXER_BINARY = os.getenv("MIXER_BINARY", "amixer")
MIXER_CARD = int(os.getenv("MIXER_CARD", "0"))
MIXER_CONTROLS = [
    c.strip()
    for c in os.getenv("MIXER_CONTROLS", "PCM,Master,Digital,Speaker,Headphone").split(",")
    if c.strip()
]
MIXER_TIMEOUT = float(os.getenv("MIXER_TIMEOUT", "2"))

# Skip hardware detection and run browser-only
FORCE_CLIENT_MODE = os.getenv("FORCE_CLIENT_MODE", "0").strip() in ("1", "true", "yes")

# ─── Playback defaults ────────────────────────────────────────────────────────
DEFAULT_VOLUME = float(os.getenv("DEFAULT_VOLUME", "0.7"))
TIMER_MIN_LEAD = 1.0  # stop time must be more than this many seconds away

# ─── Push / sync ──────────────────────────────────────────────────────────────
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "16"))
KEEPALIVE_INTERVAL = float(os.getenv("KEEPALIVE_INTERVAL", "15"))
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "5"))
PUSH_CONFIRM_TIMEOUT = float(os.getenv("PUSH_CONFIRM_TIMEOUT", "2"))

# Client volume slider: hold server pushes off while the user drags
VOLUME_DEBOUNCE = 0.25      # delay before the slider value is sent
VOLUME_COMMIT_HOLD = 0.1    # suppression left after the send
VOLUME_RELEASE_HOLD = 0.6   # suppression left after the finger lifts
VOLUME_JITTER = 0.02        # ignore server volume within this distance

APP_VERSION = "1.0.0"

# ─── Web server ──────────────────────────────────────────────────────────────
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# ─── Dev mode / logging ───────────────────────────────────────────────────────
DEV_MODE = os.getenv("DEV_MODE", "1").strip() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
