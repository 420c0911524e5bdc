"""Small time helpers shared by the server and the sync client."""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed). Naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso(dt: datetime) -> str:
    """UTC ISO string with millisecond precision and a ``Z`` suffix."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def fmt_remaining(stop_time: datetime, now: datetime | None = None) -> str:
    """Format remaining time until stop_time as m:ss or h:mm:ss."""
    now = now or utcnow()
    total_s = max(0, int((stop_time - now).total_seconds()))
    h, rem = divmod(total_s, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def next_alarm(hour: int, minute: int, now: datetime | None = None) -> datetime:
    """Next occurrence of hour:minute in now's timezone — tomorrow if it already passed."""
    now = now or datetime.now().astimezone()
    alarm = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if alarm <= now:
        alarm += timedelta(days=1)
    return alarm
