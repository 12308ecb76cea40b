"""Best time to contact each conversation."""

from messenger_outreach.services.contact_timing.algorithm import compute_best_contact_times, hour_of_week
from messenger_outreach.services.contact_timing.service import ContactTimingService
from messenger_outreach.services.contact_timing.timezone import (
    infer_timezone,
    is_valid_timezone,
    timezone_display_name,
    timezone_offset_hours,
)

__all__ = [
    "ContactTimingService",
    "compute_best_contact_times",
    "hour_of_week",
    "infer_timezone",
    "is_valid_timezone",
    "timezone_display_name",
    "timezone_offset_hours",
]
