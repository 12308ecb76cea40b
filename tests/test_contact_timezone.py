"""Tests for contact timezone inference."""

from datetime import datetime, timedelta, timezone

import pytest

from messenger_outreach.models import TimezoneConfidence, TimezoneSource
from messenger_outreach.services.contact_timing.timezone import (
    infer_from_activity,
    infer_from_location,
    infer_timezone,
    is_valid_timezone,
    timezone_display_name,
    timezone_offset_hours,
)

WINTER = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)
SUMMER = datetime(2025, 7, 15, 12, tzinfo=timezone.utc)


def daily_at(hour, days=10):
    """One message a day at ``hour`` UTC."""
    start = datetime(2025, 11, 1, hour, tzinfo=timezone.utc)
    return [start - timedelta(days=i) for i in range(days)]


# ==================== Activity ====================


@pytest.mark.parametrize(
    "hour,expected",
    [
        (14, "America/New_York"),
        (8, "Europe/London"),
        (0, "Asia/Tokyo"),
        (17, "America/Los_Angeles"),
    ],
)
def test_infer_from_activity_peak_hour(hour, expected):
    result = infer_from_activity(daily_at(hour))

    assert result.timezone == expected
    assert result.confidence == TimezoneConfidence.HIGH
    assert result.source == TimezoneSource.ACTIVITY


def test_infer_from_activity_few_messages():
    result = infer_from_activity([WINTER], "UTC")

    assert result.timezone == "UTC"
    assert result.confidence == TimezoneConfidence.LOW
    assert result.source == TimezoneSource.DEFAULT


def test_infer_from_activity_confidence_grows_with_data():
    assert infer_from_activity(daily_at(14, days=3)).confidence == TimezoneConfidence.MEDIUM
    assert infer_from_activity(daily_at(14, days=15)).confidence == TimezoneConfidence.HIGH


def test_infer_from_activity_busiest_hour_wins():
    times = daily_at(14, days=4) + daily_at(8, days=2)

    assert infer_from_activity(times).timezone == "America/New_York"


def test_infer_from_activity_unmapped_offset_keeps_default():
    # A 09:00 local peak at 11:00 UTC means UTC-2, which has no zone
    result = infer_from_activity(daily_at(11), "America/Chicago")

    assert result.timezone == "America/Chicago"
    assert result.confidence == TimezoneConfidence.LOW


# ==================== Location ====================


@pytest.mark.parametrize(
    "location,expected",
    [
        ("New York, NY", "America/New_York"),
        ("London, UK", "Europe/London"),
        ("Paris, France", "Europe/Paris"),
        ("Mumbai, India", "Asia/Kolkata"),
        ("Singapore", "Asia/Singapore"),
        ("Cebu City, Philippines", "Asia/Manila"),
        ("Tokyo, Japan", "Asia/Tokyo"),
        ("Sydney, Australia", "Australia/Sydney"),
        ("NEW YORK", "America/New_York"),
        ("new york", "America/New_York"),
    ],
)
def test_infer_from_location(location, expected):
    result = infer_from_location(location)

    assert result.timezone == expected
    assert result.confidence == TimezoneConfidence.HIGH
    assert result.source == TimezoneSource.LOCATION


def test_infer_from_location_falls_back_to_locale():
    assert infer_from_location(None, "Manila").timezone == "Asia/Manila"


def test_infer_from_location_unknown():
    result = infer_from_location()

    assert result.timezone == "UTC"
    assert result.confidence == TimezoneConfidence.LOW
    assert result.source == TimezoneSource.DEFAULT


# ==================== Best guess ====================


def test_profile_location_beats_activity():
    result = infer_timezone(daily_at(14, days=5), "San Francisco, CA")

    assert result.timezone == "America/Los_Angeles"
    assert result.source == TimezoneSource.LOCATION


def test_activity_used_without_known_location():
    result = infer_timezone(daily_at(14), "Somewhere nice", default="UTC")

    assert result.timezone == "America/New_York"
    assert result.source == TimezoneSource.ACTIVITY


def test_no_data_uses_default():
    result = infer_timezone([], default="America/Chicago")

    assert result.timezone == "America/Chicago"
    assert result.confidence == TimezoneConfidence.LOW


# ==================== Helpers ====================


@pytest.mark.parametrize("name", ["America/New_York", "Europe/London", "Asia/Tokyo", "UTC"])
def test_valid_timezones(name):
    assert is_valid_timezone(name)


@pytest.mark.parametrize("name", ["Invalid/Timezone", "America/FakeCity", "", "../etc/passwd"])
def test_invalid_timezones(name):
    assert not is_valid_timezone(name)


def test_timezone_display_name():
    assert timezone_display_name("America/New_York", WINTER) == "EST"
    assert timezone_display_name("America/New_York", SUMMER) == "EDT"
    assert timezone_display_name("Invalid/Zone") == "Invalid/Zone"


def test_timezone_offset_hours():
    assert timezone_offset_hours("UTC") == 0
    assert timezone_offset_hours("America/New_York", WINTER) == -5
    assert timezone_offset_hours("America/New_York", SUMMER) == -4
    assert timezone_offset_hours("Asia/Tokyo") == 9
    assert timezone_offset_hours("Asia/Kolkata", WINTER) == 5.5
    assert timezone_offset_hours("Invalid/Zone") == 0
