import json
from datetime import date, time

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
CLOSED = "closed"
PREVIEW_STEP_MIN = 5


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def parse_hhmm(value) -> int:
    """Minutes since midnight for ``"HH:MM"``, ``"HH:MM:SS"`` or a ``time``."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    raw = str(value or "").strip()
    parts = raw.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time value: {raw!r}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time value: {raw!r}") from None
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid time value: {raw!r}")
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_to_time(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def _load_hours(working_hours) -> dict:
    if not working_hours:
        return {}
    if isinstance(working_hours, str):
        try:
            working_hours = json.loads(working_hours)
        except ValueError:
            raise ValueError("working_hours is not valid JSON") from None
    if not isinstance(working_hours, dict):
        raise ValueError("working_hours must be an object keyed by weekday")
    return working_hours


def parse_day_hours(value) -> tuple[int, int] | None:
    """Open/close minutes for one weekday entry, ``None`` when closed.

    Accepts ``"closed"``, ``{"open": "09:00", "close": "18:00"}`` and the
    legacy ``"09:00-18:00"`` string.
    """
    if value is None:
        return None
    if isinstance(value, str):
        raw = value.strip()
        if not raw or raw.lower() == CLOSED:
            return None
        if "-" not in raw:
            raise ValueError(f"Invalid working hours: {raw!r}")
        start, end = raw.split("-", 1)
        return parse_hhmm(start), parse_hhmm(end)
    if isinstance(value, dict):
        if value.get("closed") is True:
            return None
        if "open" not in value or "close" not in value:
            raise ValueError("Working hours entry needs 'open' and 'close'")
        return parse_hhmm(value["open"]), parse_hhmm(value["close"])
    raise ValueError(f"Invalid working hours entry: {value!r}")


def day_window(working_hours, day: date) -> tuple[int, int] | None:
    hours = _load_hours(working_hours)
    return parse_day_hours(hours.get(weekday_name(day)))


def normalize_working_hours(working_hours) -> dict:
    """Validate a weekday map and rewrite it in the ``open``/``close`` format."""
    hours = _load_hours(working_hours)
    out: dict = {}
    for key, value in hours.items():
        day = str(key).strip().lower()
        if day not in WEEKDAYS:
            raise ValueError(f"Unknown weekday in working_hours: {key!r}")
        window = parse_day_hours(value)
        if window is None:
            out[day] = CLOSED
            continue
        open_min, close_min = window
        if close_min <= open_min:
            raise ValueError(f"Closing time must be after opening time on {day}")
        out[day] = {"open": format_minutes(open_min), "close": format_minutes(close_min)}
    return out


def generate_slots(open_min: int, close_min: int, duration: int) -> list[tuple[int, int]]:
    """Consecutive ``duration``-minute windows from ``open_min``.

    The last window ends at or before ``close_min``; a remainder shorter than
    ``duration`` is left unused.
    """
    if duration <= 0:
        raise ValueError("Slot duration must be positive")
    slots: list[tuple[int, int]] = []
    cursor = open_min
    while cursor + duration <= close_min:
        slots.append((cursor, cursor + duration))
        cursor += duration
    return slots


def calculate_slot_preview(posts) -> dict[str, int]:
    """How many posts start a slot at each 5-minute mark of the day."""
    if not posts:
        return {}

    valid = []
    for post in posts:
        if not isinstance(post, dict) or not post.get("start") or not post.get("end"):
            continue
        try:
            start = parse_hhmm(post["start"])
            end = parse_hhmm(post["end"])
            interval = int(post.get("service_time_minutes") or 0)
        except (TypeError, ValueError):
            continue
        if interval <= 0:
            continue
        valid.append((start, end, interval))
    if not valid:
        return {}

    min_start = min(p[0] for p in valid)
    max_end = max(p[1] for p in valid)
    preview: dict[str, int] = {}
    for mark in range(min_start, max_end + 1, PREVIEW_STEP_MIN):
        count = sum(
            1
            for start, end, interval in valid
            if mark >= start and mark + interval <= end and (mark - start) % interval == 0
        )
        if count:
            preview[format_minutes(mark)] = count
    return preview
