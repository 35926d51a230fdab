"""Time conversion helpers.

All instants inside the engine are integer epoch milliseconds. Local
wall-clock values are derived by adding a display offset (minutes east
of UTC) to an instant and reading the result as if it were UTC.
"""

from datetime import UTC, date, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from glycoview.constants import MS_IN_DAY, MS_IN_MIN

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@lru_cache(maxsize=64)
def get_zone(timezone_name: str) -> ZoneInfo:
    """Return a cached ZoneInfo for ``timezone_name``."""
    return ZoneInfo(timezone_name)


def to_ms(dt: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    delta = dt - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_ms(ms: int, tz: ZoneInfo | None = None) -> datetime:
    """Convert epoch milliseconds to an aware datetime (UTC unless ``tz``)."""
    dt = _EPOCH + timedelta(milliseconds=ms)
    return dt.astimezone(tz) if tz is not None else dt


def parse_instant(value: str | int | float) -> int:
    """Parse an ISO-8601 instant (or pass through epoch ms) to epoch ms.

    Strings without an offset are read as UTC.
    """
    if isinstance(value, int | float):
        return int(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return to_ms(dt)


def parse_device_time(value: str | int | float) -> int:
    """Parse a naive device wall-clock time to pseudo-UTC epoch ms."""
    if isinstance(value, int | float):
        return int(value)
    dt = datetime.fromisoformat(value.strip())
    return to_ms(dt.replace(tzinfo=UTC))


def to_iso(ms: int) -> str:
    """Format epoch ms as an ISO-8601 UTC string with millisecond precision."""
    return from_ms(ms).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_offset_minutes(ms: int, timezone_name: str) -> int:
    """UTC offset of ``timezone_name`` at instant ``ms``, in minutes east of UTC."""
    offset = from_ms(ms, get_zone(timezone_name)).utcoffset()
    return int(offset.total_seconds() // 60) if offset else 0


def local_ms(ms: int, display_offset: int) -> int:
    """Shift an instant into local wall-clock pseudo-UTC ms."""
    return ms + display_offset * MS_IN_MIN


def local_date_key(ms: int, display_offset: int = 0) -> str:
    """Local calendar date as ``YYYY-MM-DD``."""
    return from_ms(local_ms(ms, display_offset)).date().isoformat()


def day_of_week(ms: int, display_offset: int = 0) -> int:
    """Local day of week, Sunday = 0 through Saturday = 6."""
    return (from_ms(local_ms(ms, display_offset)).weekday() + 1) % 7


def ms_per_24(ms: int, display_offset: int = 0) -> int:
    """Milliseconds elapsed since local midnight."""
    return local_ms(ms, display_offset) % MS_IN_DAY


def tz_for(timezone_name: str | None) -> ZoneInfo:
    """Zone used for local calendar arithmetic; UTC when not timezone-aware."""
    return get_zone(timezone_name or "UTC")


def local_date(ms: int, timezone_name: str | None) -> date:
    """Calendar date of instant ``ms`` in ``timezone_name``."""
    return from_ms(ms, tz_for(timezone_name)).date()


def local_midnight(day: date, timezone_name: str | None) -> int:
    """Instant of local midnight starting ``day``."""
    tz = tz_for(timezone_name)
    return to_ms(datetime(day.year, day.month, day.day, tzinfo=tz))


def is_local_midnight(ms: int, timezone_name: str | None) -> bool:
    """Whether ``ms`` falls exactly on a local midnight."""
    return local_midnight(local_date(ms, timezone_name), timezone_name) == ms
