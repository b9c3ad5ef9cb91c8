"""
Slot display and natural-language time parsing.

Used by the deterministic handler to show offered slots, to resolve which
offered slot a lead picked ("option 2", "the Tuesday one", "5pm works"),
and to narrow availability by stated preferences ("next week mornings").
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from shared.calendar_client import Slot, parse_datetime
from shared.config import get_settings

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
WEEKDAY_ABBR = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
MONTHS = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]
ORDINALS = [("first", "1st"), ("second", "2nd"), ("third", "3rd"), ("fourth", "4th")]

MORNING_END_HOUR = 12
EVENING_START_HOUR = 17


def get_timezone() -> ZoneInfo:
    return ZoneInfo(get_settings().TIMEZONE)


def _local(dt: datetime, tz: ZoneInfo | None) -> datetime:
    tz = tz or get_timezone()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def format_slot_display(dt: datetime, tz: ZoneInfo | None = None) -> str:
    """
    Human-readable slot label.

    Examples:
        >>> format_slot_display(datetime(2025, 12, 2, 17, 0, tzinfo=CHICAGO))
        'Tuesday, Dec 2 at 5pm'
        >>> format_slot_display(datetime(2025, 12, 2, 9, 30, tzinfo=CHICAGO))
        'Tuesday, Dec 2 at 9:30am'
    """
    local = _local(dt, tz)
    hour12 = local.hour % 12 or 12
    ampm = "pm" if local.hour >= 12 else "am"
    minute = f":{local.minute:02d}" if local.minute else ""
    return (
        f"{WEEKDAYS[local.weekday()].capitalize()}, {MONTHS[local.month - 1][:3].capitalize()} "
        f"{local.day} at {hour12}{minute}{ampm}"
    )


def slot_label(slot: Slot, tz: ZoneInfo | None = None) -> str:
    return slot.display_text or format_slot_display(slot.start_time, tz)


def parse_time_selection(
    text: str | None, slots: list[Slot], tz: ZoneInfo | None = None
) -> int | None:
    """
    Resolve which offered slot the lead picked.

    Tries, in order: option numbers ("option 2", "#2", "2"), ordinals
    ("the first one"), weekday names, month + day ("Dec 3"), clock times and
    time-of-day words ("5pm", "evening").

    Returns:
        0-based index into slots, or None when nothing matches
    """
    if not text or not slots:
        return None

    lowered = text.strip().lower()

    option = re.search(r"option\s*#?\s*(\d)", lowered) or re.search(r"#\s?(\d)\b", lowered)
    option = option or re.fullmatch(r"(\d)[.)!]?", lowered)
    if option:
        number = int(option.group(1))
        if 1 <= number <= len(slots):
            return number - 1

    for index, words in enumerate(ORDINALS[: len(slots)]):
        if any(re.search(rf"\b{word}\b", lowered) for word in words):
            return index

    local_starts = [_local(slot.start_time, tz) for slot in slots]

    for index, start in enumerate(local_starts):
        day = start.weekday()
        if re.search(rf"\b({WEEKDAYS[day]}|{WEEKDAY_ABBR[day]})\b", lowered):
            return index

    for index, start in enumerate(local_starts):
        month = MONTHS[start.month - 1]
        pattern = rf"\b({month}|{month[:3]})\.?\s*{start.day}(st|nd|rd|th)?\b"
        if re.search(pattern, lowered):
            return index

    for index, start in enumerate(local_starts):
        hour12 = start.hour % 12 or 12
        ampm = "pm" if start.hour >= 12 else "am"
        minute = f":{start.minute:02d}"
        clock = rf"\b{hour12}(\s*{ampm}|{minute}\s*{ampm}|{minute})\b"
        if re.search(clock, lowered):
            return index
        if start.hour >= EVENING_START_HOUR and "evening" in lowered:
            return index
        if MORNING_END_HOUR <= start.hour < EVENING_START_HOUR and "afternoon" in lowered:
            return index
        if start.hour < MORNING_END_HOUR and "morning" in lowered:
            return index

    return None


@dataclass
class TimePreferences:
    week: str | None = None  # "this" | "next"
    day: str | None = None  # weekday name
    window: str | None = None  # "morning" | "afternoon" | "evening"
    month: int | None = None  # 1-12
    year: int | None = None

    def is_empty(self) -> bool:
        return not any((self.week, self.day, self.window, self.month, self.year))


def extract_time_preferences(text: str | None) -> TimePreferences:
    lowered = (text or "").lower()
    prefs = TimePreferences()

    month_match = re.search(
        r"\b(january|february|march|april|may|june|july|august|september|october|"
        r"november|december|jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|nov|dec)\b",
        lowered,
    )
    if month_match:
        prefix = month_match.group(1)[:3]
        prefs.month = [m[:3] for m in MONTHS].index(prefix) + 1

    year_match = re.search(r"\b(20\d{2})\b", lowered)
    if year_match:
        prefs.year = int(year_match.group(1))

    if "next week" in lowered:
        prefs.week = "next"
    elif "this week" in lowered:
        prefs.week = "this"

    if "morning" in lowered:
        prefs.window = "morning"
    elif "afternoon" in lowered:
        prefs.window = "afternoon"
    elif "evening" in lowered or "night" in lowered:
        prefs.window = "evening"

    day_match = re.search(rf"\b({'|'.join(WEEKDAYS)})\b", lowered)
    if day_match:
        prefs.day = day_match.group(1)

    return prefs


def slot_matches_preferences(
    slot: Slot,
    prefs: TimePreferences,
    now: datetime,
    tz: ZoneInfo | None = None,
) -> bool:
    """True when the slot satisfies every stated preference."""
    start = _local(slot.start_time, tz)
    today = _local(now, tz).date()
    week_start = today - timedelta(days=today.weekday())

    if prefs.week == "this" and not (week_start <= start.date() < week_start + timedelta(days=7)):
        return False
    if prefs.week == "next" and not (
        week_start + timedelta(days=7) <= start.date() < week_start + timedelta(days=14)
    ):
        return False
    if prefs.day and WEEKDAYS[start.weekday()] != prefs.day:
        return False
    if prefs.window == "morning" and start.hour >= MORNING_END_HOUR:
        return False
    if prefs.window == "afternoon" and not (MORNING_END_HOUR <= start.hour < EVENING_START_HOUR):
        return False
    if prefs.window == "evening" and start.hour < EVENING_START_HOUR:
        return False
    if prefs.month and start.month != prefs.month:
        return False
    if prefs.year and start.year != prefs.year:
        return False
    return True


TZ_SUFFIX = re.compile(r"(Z|[+-]\d{2}:\d{2})$")


def ensure_timezone(time_str: str | None, tz: ZoneInfo | None = None) -> str | None:
    """
    Append the local UTC offset to a naive ISO timestamp.

    Calendar webhooks deliver naive local times but expect offsets back.
    """
    if not time_str or TZ_SUFFIX.search(time_str):
        return time_str
    parsed = parse_datetime(time_str)
    if parsed is None:
        return time_str
    return parsed.replace(tzinfo=tz or get_timezone()).isoformat()


def strip_timezone(time_str: str | None) -> str | None:
    """Comparison key for start times: the local wall-clock part only."""
    if not time_str:
        return None
    return TZ_SUFFIX.sub("", time_str.strip())
