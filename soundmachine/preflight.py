"""Startup preflight — decides whether this host can drive audio itself."""
import shutil

from rich.console import Console

from .config import (
    APP_VERSION, ASOUND_CARDS, AUDIO_DIR, SOUNDS, PLAYER_BINARY, MIXER_BINARY,
    FORCE_CLIENT_MODE,
)

console = Console()


def detect_capability() -> bool:
    """True when a sound card is present. Mirrors what the server advertises as isPi."""
    if FORCE_CLIENT_MODE:
        return False
    try:
        return ASOUND_CARDS.exists()
    except OSError:
        return False


def run_preflight() -> bool:
    """
    Run all startup checks and print results. Return True if the server should
    control audio itself, False for client-only (browser playback) mode.
    """
    console.print(f"\n  [bold]♪  Sound Machine v{APP_VERSION}[/bold] — preflight check\n")

    checks = [
        ("Sound card", _check_sound_card),
        ("Player binary", _check_player),
        ("Mixer binary", _check_mixer),
        ("Audio assets", _check_assets),
    ]

    results = []
    for i, (label, fn) in enumerate(checks, 1):
        ok, msg, fix = fn()
        results.append((ok, label, msg, fix))
        icon = "[green]✓[/green]" if ok else "[yellow]✗[/yellow]"
        dots = "." * max(30 - len(label), 3)
        status = f"[green]{msg}[/green]" if ok else f"[yellow]{msg}[/yellow]"
        console.print(f"  [{i}/{len(checks)}] {label} {dots} {icon} {status}")

    failures = [(label, fix) for ok, label, _, fix in results if not ok and fix]
    if failures:
        console.print("")
        for label, fix in failures:
            console.print(f"  [yellow]Note for {label}:[/yellow]")
            for line in fix.strip().splitlines():
                console.print(f"    {line}")

    capable = results[0][0] and results[1][0]
    mode = "[green]server audio[/green]" if capable else "[yellow]browser-only[/yellow]"
    console.print(f"\n  Mode: {mode}\n")
    return capable


def _check_sound_card() -> tuple[bool, str, str]:
    if FORCE_CLIENT_MODE:
        return False, "disabled (FORCE_CLIENT_MODE)", ""
    if detect_capability():
        return True, f"found {ASOUND_CARDS}", ""
    return False, "none", "No ALSA card found — clients will play audio in the browser."


def _check_player() -> tuple[bool, str, str]:
    path = shutil.which(PLAYER_BINARY)
    if path:
        return True, path, ""
    return False, "missing", f"Install it: sudo apt install {PLAYER_BINARY}"


def _check_mixer() -> tuple[bool, str, str]:
    path = shutil.which(MIXER_BINARY)
    if path:
        return True, path, ""
    return False, "missing", "Volume changes won't reach the speakers: sudo apt install alsa-utils"


def _check_assets() -> tuple[bool, str, str]:
    missing = [name for name, _ in SOUNDS.values() if not (AUDIO_DIR / name).is_file()]
    if not missing:
        return True, f"{len(SOUNDS)} sounds", ""
    return False, f"missing {len(missing)}", f"Put these in {AUDIO_DIR}:\n" + "\n".join(missing)
