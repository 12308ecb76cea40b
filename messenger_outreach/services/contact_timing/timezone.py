"""Contact timezone inference from activity and profile location."""

from collections import Counter
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from messenger_outreach.models import TimezoneConfidence, TimezoneInference, TimezoneSource, utc_now

# Local hour people are assumed to be most active at
PEAK_LOCAL_HOUR = 9
MIN_ACTIVITY_SAMPLES = 3
HIGH_CONFIDENCE_SAMPLES = 10

# UTC offset in hours -> representative zone
OFFSET_ZONES: dict[int, str] = {
    -10: "Pacific/Honolulu",
    -9: "America/Los_Angeles",
    -8: "America/Los_Angeles",
    -7: "America/Denver",
    -6: "America/Chicago",
    -5: "America/New_York",
    -4: "America/New_York",
    -3: "America/Sao_Paulo",
    -1: "Europe/London",
    0: "Europe/London",
    1: "Europe/London",
    2: "Europe/Athens",
    3: "Europe/Moscow",
    4: "Asia/Dubai",
    5: "Asia/Kolkata",
    6: "Asia/Kolkata",
    7: "Asia/Singapore",
    8: "Asia/Singapore",
    9: "Asia/Tokyo",
    10: "Australia/Sydney",
    11: "Australia/Sydney",
    12: "Pacific/Auckland",
}

# Checked in order; the first matching keyword wins
LOCATION_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("new york", "boston", "miami"), "America/New_York"),
    (("chicago", "dallas", "houston"), "America/Chicago"),
    (("los angeles", "san francisco", "seattle"), "America/Los_Angeles"),
    (("london", "uk", "united kingdom"), "Europe/London"),
    (("paris", "france", "germany", "berlin"), "Europe/Paris"),
    (("india", "mumbai", "delhi"), "Asia/Kolkata"),
    (("singapore",), "Asia/Singapore"),
    (("philippines", "manila", "cebu", "davao"), "Asia/Manila"),
    (("china", "beijing", "shanghai"), "Asia/Shanghai"),
    (("japan", "tokyo"), "Asia/Tokyo"),
    (("sydney", "melbourne"), "Australia/Sydney"),
]


def infer_from_activity(times: list[datetime], default: str = "UTC") -> TimezoneInference:
    """Guess a zone by assuming the busiest UTC hour is 09:00 local.

    Fewer than three samples fall back to ``default``.
    """
    if len(times) < MIN_ACTIVITY_SAMPLES:
        return TimezoneInference(timezone=default)

    hours = Counter(t.astimezone(ZoneInfo("UTC")).hour for t in times)
    peak = min(hours, key=lambda h: (-hours[h], h))
    offset = (PEAK_LOCAL_HOUR - peak + 12) % 24 - 12

    zone = OFFSET_ZONES.get(offset)
    if zone is None:
        return TimezoneInference(timezone=default, source=TimezoneSource.ACTIVITY)

    confidence = TimezoneConfidence.MEDIUM
    if len(times) >= HIGH_CONFIDENCE_SAMPLES:
        confidence = TimezoneConfidence.HIGH
    return TimezoneInference(timezone=zone, confidence=confidence, source=TimezoneSource.ACTIVITY)


def infer_from_location(location: str | None = None, locale: str | None = None) -> TimezoneInference:
    text = (location or locale or "").lower()
    if text:
        for keywords, zone in LOCATION_KEYWORDS:
            if any(k in text for k in keywords):
                return TimezoneInference(
                    timezone=zone, confidence=TimezoneConfidence.HIGH, source=TimezoneSource.LOCATION
                )
    return TimezoneInference()


def infer_timezone(
    times: list[datetime],
    location: str | None = None,
    locale: str | None = None,
    default: str = "UTC",
) -> TimezoneInference:
    """A recognised profile location wins over activity."""
    by_location = infer_from_location(location, locale)
    if by_location.confidence == TimezoneConfidence.HIGH:
        return by_location
    return infer_from_activity(times, default)


def is_valid_timezone(name: str) -> bool:
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def timezone_display_name(name: str, now: datetime | None = None) -> str:
    """Short name such as ``EST``; unknown zones are returned unchanged."""
    if not is_valid_timezone(name):
        return name
    return (now or utc_now()).astimezone(ZoneInfo(name)).tzname() or name


def timezone_offset_hours(name: str, now: datetime | None = None) -> float:
    if not is_valid_timezone(name):
        return 0.0
    offset = (now or utc_now()).astimezone(ZoneInfo(name)).utcoffset()
    return offset.total_seconds() / 3600 if offset else 0.0
