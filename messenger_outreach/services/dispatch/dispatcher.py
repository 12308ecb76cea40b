"""Batched bulk message dispatch.

A message is split into batches of recipients when it is sent. Each call to
``process_next_batch`` claims one pending batch, sends to its recipients
one by one and recomputes the message status from all batches, so the work
can be driven by a background task, a cron tick or a client polling the
API, and several workers never send the same batch twice.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog

from messenger_outreach.core.config import Settings, settings as default_settings
from messenger_outreach.core.exceptions import (
    AppException,
    InvalidStatusTransition,
    NotFound,
    ValidationFailed,
)
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import (
    ActivityType,
    BatchStatus,
    ConversationStatus,
    ConversationTag,
    DeliveryErrorType,
    DeliveryStatus,
    FacebookPage,
    Message,
    MessageActivity,
    MessageBatch,
    MessageDelivery,
    MessageStatus,
    OutgoingMessage,
    RecipientType,
    utc_now,
)
from messenger_outreach.services.channels.base import ChannelAdapter
from messenger_outreach.services.contact_timing.service import ContactTimingService
from messenger_outreach.services.dispatch.batching import (
    BatchSummary,
    build_batches,
    final_error_message,
    summarize_batches,
)
from messenger_outreach.services.dispatch.personalization import personalize
from messenger_outreach.services.dispatch.rate_limit import RateLimitTracker
from messenger_outreach.services.facebook.errors import retry_delay
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

SENDABLE_STATUSES = frozenset({MessageStatus.DRAFT, MessageStatus.SCHEDULED, MessageStatus.FAILED})
RETRY_SWEEP_STATUSES = [MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.PARTIALLY_SENT]


@dataclass
class BatchOutcome:
    """Result of one ``process_next_batch`` call."""

    batch_number: int | None
    sent: int
    failed: int
    status: BatchStatus | None
    has_more: bool
    cancelled: bool
    summary: BatchSummary
    failure_reason: str | None = None
    claimed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch": (
                {
                    "number": self.batch_number,
                    "sent": self.sent,
                    "failed": self.failed,
                    "status": self.status.value if self.status else None,
                }
                if self.batch_number is not None
                else None
            ),
            "has_more": self.has_more,
            "cancelled": self.cancelled,
            "claimed": self.claimed,
            "totals": self.summary.to_dict(),
            "failure_reason": self.failure_reason,
        }


@dataclass
class SendPlan:
    """Batches created for a send or a resend."""

    message: Message
    batches: list[MessageBatch] = field(default_factory=list)
    recipient_count: int = 0

    @property
    def start_number(self) -> int:
        return self.batches[0].batch_number if self.batches else 0

    def to_dict(self, batch_size: int) -> dict[str, Any]:
        return {
            "message_id": self.message.id,
            "status": self.message.status.value,
            "total": self.recipient_count,
            "batches": {
                "total": len(self.batches),
                "size": batch_size,
                "start_number": self.start_number,
            },
        }


@dataclass
class _BatchProgress:
    """Running counts of a batch being sent."""

    sent: int = 0
    failed: int = 0
    first_error: str | None = None
    cancelled: bool = False


class MessageDispatcher:
    """Sends bulk messages in batches with delivery tracking."""

    def __init__(
        self,
        storage: StorageBackend,
        adapter: ChannelAdapter,
        rate_limiter: RateLimitTracker | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        timing: ContactTimingService | None = None,
    ) -> None:
        self.storage = storage
        self.adapter = adapter
        self.timing = timing
        self.settings = settings or default_settings
        self.rate_limiter = rate_limiter or RateLimitTracker(
            max_calls=self.settings.page_rate_limit_calls,
            period=self.settings.page_rate_limit_period_seconds,
        )
        self._sleep = sleep

    # ==================== Lookups ====================

    async def _get_owned_message(self, message_id: str, user_id: str | None) -> Message:
        message = await self.storage.get_message(message_id)
        if message is None or (user_id is not None and message.created_by != user_id):
            raise NotFound("Message", message_id)
        return message

    async def _get_page(self, message: Message) -> FacebookPage:
        page = await self.storage.get_page(message.page_id)
        if page is None:
            raise NotFound("Facebook page", message.page_id)
        if not page.access_token:
            raise ValidationFailed(
                "Facebook page has no access token, reconnect the page",
                details={"page_id": page.id},
            )
        return page

    async def _log_activity(self, message_id: str, activity_type: ActivityType, description: str) -> None:
        await self.storage.add_activity(
            MessageActivity(message_id=message_id, activity_type=activity_type, description=description)
        )

    # ==================== Send preparation ====================

    async def resolve_recipients(self, message: Message, page: FacebookPage) -> list[str]:
        """Selected ids, or the active conversations of the page."""
        if message.recipient_type == RecipientType.SELECTED:
            return list(dict.fromkeys(r for r in message.selected_recipients if r))

        conversations, _ = await self.storage.list_conversations(
            page_ids=[page.facebook_page_id],
            status=ConversationStatus.ACTIVE,
            limit=None,
        )
        return list(dict.fromkeys(c.sender_id for c in conversations))

    async def prepare_send(self, message_id: str, user_id: str | None) -> SendPlan:
        """Move a message to sending and create its batches."""
        message = await self._get_owned_message(message_id, user_id)
        if message.status not in SENDABLE_STATUSES:
            raise InvalidStatusTransition("message", message.status.value, MessageStatus.SENDING.value)

        page = await self._get_page(message)
        recipients = await self.resolve_recipients(message, page)

        if not recipients:
            message.transition_to(MessageStatus.SENDING)
            message.transition_to(MessageStatus.FAILED)
            message.error_message = "No recipients found"
            await self.storage.save_message(message)
            await self._log_activity(
                message.id, ActivityType.FAILED, f'Message "{message.title}" has no recipients'
            )
            raise ValidationFailed("No recipients found for this message")

        message.transition_to(MessageStatus.SENDING)
        message.recipient_count = len(recipients)
        message.delivered_count = 0
        message.error_message = None
        await self.storage.save_message(message)

        start_number = await self.storage.max_batch_number(message.id) + 1
        batches = build_batches(message.id, recipients, self.settings.batch_size, start_number)
        await self.storage.save_batches(batches)

        logger.info(
            "Message batches created",
            message_id=message.id,
            recipients=len(recipients),
            batches=len(batches),
        )
        return SendPlan(message=message, batches=batches, recipient_count=len(recipients))

    # ==================== Batch processing ====================

    async def _is_cancelled(self, message_id: str) -> bool:
        current = await self.storage.get_message(message_id)
        return current is None or current.status == MessageStatus.CANCELLED

    async def _auto_tag(self, tag_id: str, facebook_page_id: str, recipient_id: str) -> None:
        try:
            conversation = await self.storage.get_conversation_by_sender(facebook_page_id, recipient_id)
            if conversation is None:
                logger.debug("No conversation to auto-tag", recipient=mask_id(recipient_id))
                return
            await self.storage.add_conversation_tags(
                [ConversationTag(conversation_id=conversation.id, tag_id=tag_id)]
            )
        except AppException as e:
            logger.warning("Auto-tag failed", recipient=mask_id(recipient_id), error=e.message)

    async def _track_send(self, facebook_page_id: str, recipient_id: str, message_id: str | None) -> None:
        if self.timing is None:
            return
        try:
            await self.timing.track_send_to(facebook_page_id, recipient_id, message_id)
        except AppException as e:
            logger.warning("Contact timing tracking failed", recipient=mask_id(recipient_id), error=e.message)

    async def _previous_attempts(self, message_id: str) -> dict[str, int]:
        attempts: dict[str, int] = {}
        for delivery in await self.storage.list_deliveries(message_id):
            attempts[delivery.recipient_id] = delivery.attempt_count
        return attempts

    async def process_next_batch(self, message_id: str) -> BatchOutcome:
        """Claim and send the lowest pending batch of a message."""
        message = await self.storage.get_message(message_id)
        if message is None:
            raise NotFound("Message", message_id)

        if message.status == MessageStatus.CANCELLED:
            await self.storage.cancel_open_batches(message_id)
            summary = await self._update_message_status(message_id)
            return BatchOutcome(None, 0, 0, None, False, True, summary, claimed=False)

        batch = await self.storage.next_open_batch(message_id)
        if batch is None:
            summary = await self._update_message_status(message_id)
            return BatchOutcome(None, 0, 0, None, False, False, summary, claimed=False)

        page = await self._get_page(message)
        if message.status != MessageStatus.SENDING:
            message.transition_to(MessageStatus.SENDING)
            await self.storage.save_message(message)

        claimed = await self.storage.claim_batch(batch.id)
        if claimed is None:
            logger.info("Batch already claimed", message_id=message_id, batch_number=batch.batch_number)
            summary = summarize_batches(await self.storage.list_batches(message_id))
            return BatchOutcome(batch.batch_number, 0, 0, None, True, False, summary, claimed=False)
        batch = claimed

        logger.info(
            "Processing batch",
            message_id=message_id,
            batch_number=batch.batch_number,
            total_batches=batch.total_batches,
            recipients=batch.recipient_count,
        )


        progress = _BatchProgress()
        try:
            await self._send_batch(message, page, batch, progress)
        except Exception as e:
            await self._abort_batch(batch, progress, e)
            raise

        stored = await self.storage.get_batch(batch.id)
        if stored is not None and stored.status == BatchStatus.CANCELLED:
            progress.cancelled = True

        sent, failed = progress.sent, progress.failed
        if progress.cancelled:
            status = BatchStatus.CANCELLED
        elif failed > 0 and failed == len(batch.recipients):
            status = BatchStatus.FAILED
        else:
            status = BatchStatus.COMPLETED

        batch.sent_count = sent
        batch.failed_count = failed
        batch.error_message = (
            progress.first_error or f"{failed} recipient(s) failed in this batch" if failed > 0 else None
        )
        batch.transition_to(status)
        await self.storage.save_batch(batch)

        logger.info(
            "Batch finished",
            message_id=message_id,
            batch_number=batch.batch_number,
            sent=sent,
            failed=failed,
            status=status.value,
        )

        summary = await self._update_message_status(message_id)
        cancelled = progress.cancelled or await self._is_cancelled(message_id)
        return BatchOutcome(
            batch_number=batch.batch_number,
            sent=sent,
            failed=failed,
            status=status,
            has_more=summary.pending_batches > 0 and not cancelled,
            cancelled=cancelled,
            summary=summary,
            failure_reason=progress.first_error,
        )

    async def _send_batch(
        self,
        message: Message,
        page: FacebookPage,
        batch: MessageBatch,
        progress: _BatchProgress,
    ) -> None:
        """Send to each recipient of a claimed batch, recording into ``progress``."""
        auto_tag = await self.storage.get_message_auto_tag(message.id)
        attempts = await self._previous_attempts(message.id)
        interval = max(1, self.settings.cancellation_check_interval)
        checkpoint = max(1, self.settings.progress_checkpoint_interval)
        total = len(batch.recipients)
        rate_limited = 0

        for index, recipient_id in enumerate(batch.recipients):
            if index % interval == 0 and await self._is_cancelled(message.id):
                logger.info("Cancellation detected", message_id=message.id, batch_number=batch.batch_number)
                progress.cancelled = True
                return

            content = await personalize(
                message.content, recipient_id, message, self.storage, page.facebook_page_id
            )
            await self.rate_limiter.acquire(page.facebook_page_id)
            result = await self.adapter.send_message(
                OutgoingMessage(
                    recipient_id=recipient_id,
                    content=content,
                    attachments=message.media_attachments,
                    message_tag=message.message_tag,
                    page_access_token=page.access_token,
                )
            )
            if result.success:
                progress.sent += 1
            else:
                progress.failed += 1
                progress.first_error = progress.first_error or result.error

            await self.storage.save_delivery(
                MessageDelivery(
                    message_id=message.id,
                    batch_id=batch.id,
                    recipient_id=recipient_id,
                    status=DeliveryStatus.SENT if result.success else DeliveryStatus.FAILED,
                    facebook_message_id=result.message_id,
                    error_type=None if result.success else (result.error_type or DeliveryErrorType.OTHER),
                    error_message=result.error,
                    attempt_count=attempts.get(recipient_id, 0) + 1,
                )
            )

            if result.error_type == DeliveryErrorType.RATE_LIMIT:
                # Back off further on each consecutive rate limit
                self.rate_limiter.penalize(
                    page.facebook_page_id, retry_delay(rate_limited, result.retry_after)
                )
                rate_limited += 1
            else:
                rate_limited = 0

            if result.success:
                if auto_tag:
                    await self._auto_tag(auto_tag.tag_id, page.facebook_page_id, recipient_id)
                await self._track_send(page.facebook_page_id, recipient_id, result.message_id)
            else:
                logger.warning(
                    "Send failed",
                    message_id=message.id,
                    batch_number=batch.batch_number,
                    recipient=mask_id(recipient_id),
                    error_type=result.error_type.value if result.error_type else None,
                )

            if (index + 1) % checkpoint == 0 or index == total - 1:
                if not await self._save_progress(batch, progress):
                    logger.info(
                        "Batch cancelled during send",
                        message_id=message.id,
                        batch_number=batch.batch_number,
                    )
                    progress.cancelled = True
                    return

            if self.settings.message_delay_seconds > 0:
                await self._sleep(self.settings.message_delay_seconds)

    async def _save_progress(self, batch: MessageBatch, progress: _BatchProgress) -> bool:
        """Store running counts on ``batch``; False if it was cancelled meanwhile."""
        stored = await self.storage.get_batch(batch.id)
        if stored is not None and stored.status == BatchStatus.CANCELLED:
            return False
        batch.sent_count = progress.sent
        batch.failed_count = progress.failed
        await self.storage.save_batch(batch)
        return True

    async def _abort_batch(self, batch: MessageBatch, progress: _BatchProgress, error: Exception) -> None:
        """Close a claimed batch after a crash.

        The batch keeps the recipients that were already attempted and is
        marked failed. The rest go into a new pending batch so a retry picks
        them up without sending twice.
        """
        attempted = progress.sent + progress.failed
        remaining = batch.recipients[attempted:]

        stored = await self.storage.get_batch(batch.id)
        if stored is not None and stored.status == BatchStatus.CANCELLED:
            status = BatchStatus.CANCELLED
            remaining = []
        else:
            status = BatchStatus.FAILED

        batch.recipients = batch.recipients[:attempted]
        batch.recipient_count = attempted
        batch.sent_count = progress.sent
        batch.failed_count = progress.failed
        batch.error_message = f"Processing error: {error}"
        batch.transition_to(status)
        await self.storage.save_batch(batch)

        if remaining:
            start_number = await self.storage.max_batch_number(batch.message_id) + 1
            await self.storage.save_batches(
                build_batches(batch.message_id, remaining, self.settings.batch_size, start_number)
            )

        logger.warning(
            "Batch aborted",
            message_id=batch.message_id,
            batch_number=batch.batch_number,
            attempted=attempted,
            requeued=len(remaining),
        )

    async def _update_message_status(self, message_id: str) -> BatchSummary:
        """Recompute counts, error text and status of a message from its batches."""
        summary = summarize_batches(await self.storage.list_batches(message_id))
        message = await self.storage.get_message(message_id)
        if message is None:
            return summary

        was_cancelled = message.status == MessageStatus.CANCELLED
        final_status = MessageStatus.CANCELLED if was_cancelled else summary.final_status

        message.delivered_count = summary.sent
        message.error_message = final_error_message(summary, cancelled=was_cancelled)
        changed = final_status != message.status
        if changed:
            message.transition_to(final_status)
        await self.storage.save_message(message)

        if changed and final_status == MessageStatus.SENT:
            await self._log_activity(
                message_id,
                ActivityType.SENT,
                f'Message "{message.title}" sent to {summary.sent} recipients ({summary.failed} failed)',
            )
        elif changed and final_status == MessageStatus.FAILED:
            await self._log_activity(
                message_id, ActivityType.FAILED, f'Message "{message.title}" failed to send'
            )
        return summary

    async def run(self, message_id: str) -> BatchOutcome | None:
        """Process batches until none are left to claim.

        Unexpected errors leave the message partially sent with the error.
        The batch that was in flight is closed and its unattempted recipients
        are queued again, so ``retry_pending`` can resume the send.
        """
        try:
            while True:
                outcome = await self.process_next_batch(message_id)
                if not outcome.has_more:
                    return outcome
                if self.settings.batch_delay_seconds > 0:
                    await self._sleep(self.settings.batch_delay_seconds)
        except Exception as e:
            logger.error("Batch processing failed", message_id=message_id, error=str(e), exc_info=True)
            await self._mark_partially_sent(message_id, str(e))
            return None

    async def _mark_partially_sent(self, message_id: str, error: str) -> None:
        message = await self.storage.get_message(message_id)
        if message is None:
            return
        if message.can_transition_to(MessageStatus.PARTIALLY_SENT):
            message.transition_to(MessageStatus.PARTIALLY_SENT)
        message.delivered_count = summarize_batches(await self.storage.list_batches(message_id)).sent
        message.error_message = f"Processing error: {error}"
        await self.storage.save_message(message)

    # ==================== Cancel & retry ====================

    async def cancel(self, message_id: str, user_id: str | None) -> dict[str, Any]:
        """Cancel a message that is being sent."""
        message = await self._get_owned_message(message_id, user_id)
        if message.status != MessageStatus.SENDING:
            raise InvalidStatusTransition("message", message.status.value, MessageStatus.CANCELLED.value)

        message.transition_to(MessageStatus.CANCELLED)
        message.error_message = "Cancelled by user"
        await self.storage.save_message(message)

        cancelled_batches = await self.storage.cancel_open_batches(message_id)
        summary = summarize_batches(await self.storage.list_batches(message_id))
        await self._log_activity(
            message_id,
            ActivityType.CANCELLED,
            f'Message "{message.title}" cancelled. {summary.sent} sent before cancellation',
        )
        logger.info("Message cancelled", message_id=message_id, cancelled_batches=cancelled_batches)
        return {
            "message_id": message_id,
            "status": message.status.value,
            "cancelled_batches": cancelled_batches,
            "sent": summary.sent,
            "not_sent": summary.total_recipients - summary.sent,
        }

    async def retry_pending(self, message_id: str, user_id: str | None) -> int:
        """Reopen a message so its pending batches get processed again."""
        message = await self._get_owned_message(message_id, user_id)
        pending = [
            b for b in await self.storage.list_batches(message_id) if b.status == BatchStatus.PENDING
        ]
        if not pending:
            raise ValidationFailed("No pending batches to retry")

        if message.status != MessageStatus.SENDING:
            message.transition_to(MessageStatus.SENDING)
            await self.storage.save_message(message)
        return len(pending)

    async def retry_failed(
        self,
        message_id: str,
        user_id: str | None,
        recipient_ids: list[str] | None = None,
        error_types: list[DeliveryErrorType] | None = None,
    ) -> SendPlan:
        """Create new batches for failed recipients.

        Without explicit ``recipient_ids`` only retryable failures are used;
        permanent error types need to be asked for through ``error_types``.
        """
        message = await self._get_owned_message(message_id, user_id)
        await self._get_page(message)

        if recipient_ids:
            recipients = list(dict.fromkeys(r for r in recipient_ids if r))
        else:
            retryable = await self.storage.retryable_deliveries(message_id, message.max_retry_attempts)
            if error_types:
                wanted = set(error_types)
                retryable = [d for d in retryable if d.error_type in wanted]
            else:
                retryable = [d for d in retryable if not (d.error_type and d.error_type.is_permanent)]
            recipients = [d.recipient_id for d in retryable]

        if not recipients:
            raise ValidationFailed("No recipients to retry")

        if message.status != MessageStatus.SENDING:
            message.transition_to(MessageStatus.SENDING)
        message.retry_count += 1
        await self.storage.save_message(message)

        start_number = await self.storage.max_batch_number(message_id) + 1
        batches = build_batches(message_id, recipients, self.settings.batch_size, start_number)
        await self.storage.save_batches(batches)

        logger.info(
            "Retry batches created",
            message_id=message_id,
            recipients=len(recipients),
            start_number=start_number,
        )
        return SendPlan(message=message, batches=batches, recipient_count=len(recipients))

    async def failed_recipients(self, message_id: str, user_id: str | None) -> dict[str, Any]:
        """Latest outcome per recipient with error type counts."""
        message = await self._get_owned_message(message_id, user_id)

        latest: dict[str, MessageDelivery] = {}
        for delivery in await self.storage.list_deliveries(message_id):
            latest[delivery.recipient_id] = delivery

        failed = [d for d in latest.values() if d.status == DeliveryStatus.FAILED]
        retryable = [
            d
            for d in failed
            if d.attempt_count < message.max_retry_attempts
            and not (d.error_type and d.error_type.is_permanent)
        ]
        error_types = Counter(
            (d.error_type or DeliveryErrorType.OTHER).value for d in failed
        )

        def _entry(d: MessageDelivery) -> dict[str, Any]:
            return {
                "recipient_id": d.recipient_id,
                "error_type": d.error_type.value if d.error_type else None,
                "error_message": d.error_message,
                "attempt_count": d.attempt_count,
                "last_attempt_at": d.created_at.isoformat(),
            }

        return {
            "message_id": message_id,
            "failed": [_entry(d) for d in failed],
            "retryable": [_entry(d) for d in retryable],
            "error_types": dict(error_types),
            "stats": {
                "total": len(latest),
                "sent": len(latest) - len(failed),
                "failed": len(failed),
                "retryable": len(retryable),
            },
        }

    # ==================== Scheduled dispatch ====================

    async def dispatch_due(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Send scheduled messages that are due."""
        now = now or utc_now()
        due = await self.storage.list_due_scheduled(now, self.settings.scheduled_dispatch_limit)
        results: list[dict[str, Any]] = []

        for message in due:
            try:
                await self.prepare_send(message.id, None)
            except AppException as e:
                logger.warning("Scheduled dispatch failed", message_id=message.id, error=e.message)
                results.append({"message_id": message.id, "status": "error", "error": e.message})
                continue

            outcome = await self.run(message.id)
            if outcome is None:
                results.append({"message_id": message.id, "status": "error", "error": "Processing failed"})
            else:
                results.append(
                    {
                        "message_id": message.id,
                        "status": outcome.summary.final_status.value,
                        "sent": outcome.summary.sent,
                        "failed": outcome.summary.failed,
                    }
                )

        if due:
            logger.info("Scheduled dispatch finished", processed=len(due))
        return results

    async def retry_failed_messages(self, limit: int = 50) -> list[dict[str, Any]]:
        """Resend retryable failures of finished messages across all users.

        Messages that used up ``max_retry_attempts`` retries, or whose
        failures are all permanent, are left alone.
        """
        candidates = await self.storage.list_messages_by_status(RETRY_SWEEP_STATUSES, limit)
        results: list[dict[str, Any]] = []

        for message in candidates:
            if message.retry_count >= message.max_retry_attempts:
                continue
            failures = await self.storage.retryable_deliveries(message.id, message.max_retry_attempts)
            if not any(not (d.error_type and d.error_type.is_permanent) for d in failures):
                continue

            try:
                plan = await self.retry_failed(message.id, None)
            except AppException as e:
                logger.warning("Automatic retry failed", message_id=message.id, error=e.message)
                results.append(
                    {"message_id": message.id, "title": message.title, "status": "error", "error": e.message}
                )
                continue

            outcome = await self.run(message.id)
            results.append(
                {
                    "message_id": message.id,
                    "title": message.title,
                    "status": outcome.summary.final_status.value if outcome else "error",
                    "recipients_count": plan.recipient_count,
                    "retry_attempt": plan.message.retry_count,
                }
            )

        if results:
            logger.info("Automatic retries finished", messages=len(results))
        return results
