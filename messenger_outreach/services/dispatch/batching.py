"""Batch splitting and status summaries."""

from dataclasses import dataclass, field
from typing import Sequence

from messenger_outreach.models import BatchStatus, MessageBatch, MessageStatus


@dataclass
class BatchSummary:
    """Totals across all batches of a message."""

    total_recipients: int = 0
    sent: int = 0
    failed: int = 0
    pending_batches: int = 0
    failed_batches: int = 0
    completed_batches: int = 0
    cancelled_batches: int = 0
    failure_messages: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> int:
        if self.total_recipients <= 0:
            return 0
        return round(self.sent / self.total_recipients * 100)

    @property
    def final_status(self) -> MessageStatus:
        """Status the message should have given these batches."""
        if self.pending_batches > 0:
            return MessageStatus.SENDING
        if self.sent == 0:
            return MessageStatus.FAILED
        return MessageStatus.SENT

    def to_dict(self) -> dict:
        return {
            "total_recipients": self.total_recipients,
            "sent": self.sent,
            "failed": self.failed,
            "pending_batches": self.pending_batches,
            "failed_batches": self.failed_batches,
            "completed_batches": self.completed_batches,
            "cancelled_batches": self.cancelled_batches,
            "failure_messages": list(self.failure_messages),
            "success_rate": self.success_rate,
            "final_status": self.final_status.value,
        }


def split_into_batches(recipients: Sequence[str], size: int) -> list[list[str]]:
    """Split recipients into consecutive chunks of at most ``size``."""
    if size <= 0:
        raise ValueError("batch size must be positive")
    return [list(recipients[i : i + size]) for i in range(0, len(recipients), size)]


def build_batches(
    message_id: str,
    recipients: Sequence[str],
    size: int,
    start_number: int = 1,
) -> list[MessageBatch]:
    """Create pending batch records numbered from ``start_number``."""
    chunks = split_into_batches(recipients, size)
    return [
        MessageBatch(
            message_id=message_id,
            batch_number=start_number + index,
            total_batches=len(chunks),
            recipients=chunk,
            recipient_count=len(chunk),
        )
        for index, chunk in enumerate(chunks)
    ]


def summarize_batches(batches: Sequence[MessageBatch]) -> BatchSummary:
    summary = BatchSummary()
    for batch in batches:
        summary.total_recipients += batch.recipient_count
        summary.sent += batch.sent_count
        summary.failed += batch.failed_count
        if batch.status in (BatchStatus.PENDING, BatchStatus.PROCESSING):
            summary.pending_batches += 1
        elif batch.status == BatchStatus.FAILED:
            summary.failed_batches += 1
        elif batch.status == BatchStatus.COMPLETED:
            summary.completed_batches += 1
        elif batch.status == BatchStatus.CANCELLED:
            summary.cancelled_batches += 1
        if batch.error_message:
            summary.failure_messages.append(batch.error_message)
    return summary


def final_error_message(summary: BatchSummary, cancelled: bool = False) -> str | None:
    """Error text stored on the message after a batch finishes."""
    if cancelled:
        return (
            f"Cancelled by user. {summary.sent} sent, "
            f"{summary.total_recipients - summary.sent} not sent"
        )
    if summary.failure_messages:
        return summary.failure_messages[0]
    if summary.sent == 0 and summary.failed > 0:
        return f"All {summary.failed} messages failed to send"
    if summary.failed > 0:
        return f"{summary.sent} sent, {summary.failed} failed"
    return None
