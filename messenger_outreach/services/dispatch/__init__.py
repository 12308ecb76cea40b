"""Bulk message dispatch."""

from messenger_outreach.services.dispatch.batching import (
    BatchSummary,
    build_batches,
    split_into_batches,
    summarize_batches,
)
from messenger_outreach.services.dispatch.dispatcher import (
    BatchOutcome,
    MessageDispatcher,
    SendPlan,
)
from messenger_outreach.services.dispatch.personalization import personalize
from messenger_outreach.services.dispatch.rate_limit import RateLimitTracker

__all__ = [
    "BatchOutcome",
    "BatchSummary",
    "MessageDispatcher",
    "RateLimitTracker",
    "SendPlan",
    "build_batches",
    "personalize",
    "split_into_batches",
    "summarize_batches",
]
