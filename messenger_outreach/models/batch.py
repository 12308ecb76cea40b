"""Message batch model and its status machine."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from messenger_outreach.core.exceptions import InvalidStatusTransition
from messenger_outreach.models.common import new_id, utc_now


class BatchStatus(str, Enum):
    """Lifecycle of a batch of recipients."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING, BatchStatus.CANCELLED}),
    BatchStatus.PROCESSING: frozenset(
        {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED}
    ),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}

OPEN_BATCH_STATUSES = frozenset({BatchStatus.PENDING, BatchStatus.PROCESSING})


class MessageBatch(BaseModel):
    """A slice of a message's recipients processed in one unit of work."""

    id: str = Field(default_factory=new_id)
    message_id: str
    batch_number: int
    total_batches: int
    recipients: list[str] = Field(default_factory=list)
    recipient_count: int = 0
    status: BatchStatus = BatchStatus.PENDING
    sent_count: int = 0
    failed_count: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_BATCH_STATUSES

    def transition_to(self, target: BatchStatus) -> None:
        if target == self.status:
            return
        if target not in BATCH_TRANSITIONS[self.status]:
            raise InvalidStatusTransition("batch", self.status.value, target.value)
        self.status = target
        now = utc_now()
        if target == BatchStatus.PROCESSING:
            self.started_at = now
        elif target not in OPEN_BATCH_STATUSES:
            self.completed_at = now
        self.updated_at = now
