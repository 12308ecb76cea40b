"""Tests for batch splitting and summaries."""

import pytest

from messenger_outreach.models import BatchStatus, MessageStatus
from messenger_outreach.services.dispatch.batching import (
    build_batches,
    final_error_message,
    split_into_batches,
    summarize_batches,
)


def test_split_into_batches():
    assert split_into_batches(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
    assert split_into_batches([], 100) == []


def test_split_rejects_non_positive_size():
    with pytest.raises(ValueError):
        split_into_batches(["a"], 0)


def test_build_batches_numbers_from_start():
    """Resend batches continue the numbering of earlier ones."""
    batches = build_batches("msg-1", [f"r{i}" for i in range(250)], size=100, start_number=4)

    assert [b.batch_number for b in batches] == [4, 5, 6]
    assert [b.recipient_count for b in batches] == [100, 100, 50]
    assert all(b.total_batches == 3 for b in batches)
    assert all(b.status == BatchStatus.PENDING for b in batches)


def test_summary_final_status():
    batches = build_batches("msg-1", ["a", "b", "c"], size=2)
    summary = summarize_batches(batches)
    assert summary.total_recipients == 3
    assert summary.pending_batches == 2
    assert summary.final_status == MessageStatus.SENDING

    for batch in batches:
        batch.status = BatchStatus.COMPLETED
    batches[0].sent_count = 2
    batches[1].failed_count = 1
    batches[1].error_message = "Invalid recipient"

    summary = summarize_batches(batches)
    assert summary.final_status == MessageStatus.SENT
    assert summary.success_rate == 67
    assert final_error_message(summary) == "Invalid recipient"


def test_summary_all_failed():
    batches = build_batches("msg-1", ["a", "b"], size=2)
    batches[0].status = BatchStatus.FAILED
    batches[0].failed_count = 2

    summary = summarize_batches(batches)
    assert summary.final_status == MessageStatus.FAILED
    assert summary.failed_batches == 1
    assert final_error_message(summary) == "All 2 messages failed to send"


def test_cancelled_error_message():
    batches = build_batches("msg-1", ["a", "b", "c"], size=2)
    batches[0].status = BatchStatus.COMPLETED
    batches[0].sent_count = 2
    batches[1].status = BatchStatus.CANCELLED

    message = final_error_message(summarize_batches(batches), cancelled=True)
    assert message == "Cancelled by user. 2 sent, 1 not sent"
