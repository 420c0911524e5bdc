"""Sound Machine — entry point."""
import logging
import signal
import sys

import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from soundmachine.config import HOST, PORT, LOG_LEVEL
from soundmachine.preflight import run_preflight
from soundmachine.web.server import create_app

console = Console()


def setup_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def main():
    setup_logging()
    capable = run_preflight()
    app = create_app(capable=capable)
    machine = app.state.machine

    # uvicorn handles SIGINT/SIGTERM; a closed terminal must not leak mpg123 either
    def _on_signal(signum, frame):
        machine.kill_now()
        sys.exit(0)

    signal.signal(signal.SIGHUP, _on_signal)

    console.print(f"  [bold cyan]♪[/bold cyan]  Sound Machine running on http://{HOST}:{PORT}\n")
    try:
        # Open SSE streams never finish on their own; don't let them hold up shutdown
        uvicorn.run(
            app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower(),
            timeout_graceful_shutdown=3,
        )
    finally:
        machine.kill_now()
    console.print("\n  [bold cyan]♪[/bold cyan]  Quiet now. Goodbye.\n")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
