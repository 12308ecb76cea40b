"""AI follow-up automations for conversations that went quiet."""

from collections import defaultdict
from datetime import datetime

import structlog

from messenger_outreach.core.exceptions import AppException
from messenger_outreach.core.logging import mask_id
from messenger_outreach.models import (
    AutomationExecution,
    AutomationRule,
    AutomationRunResult,
    AutomationStop,
    Conversation,
    ConversationLine,
    ConversationStatus,
    ExecutionStatus,
    FacebookPage,
    LanguageStyle,
    StopReason,
    utc_now,
)
from messenger_outreach.services.ai.provider import LLMProvider
from messenger_outreach.services.ai.transcript import fetch_transcript, format_transcript
from messenger_outreach.services.channels.base import ChannelAdapter
from messenger_outreach.services.facebook.client import GraphAPIClient
from messenger_outreach.storage.base import StorageBackend

logger = structlog.get_logger()

LANGUAGE_GUIDANCE = {
    LanguageStyle.TAGLISH: "Write in Taglish, mixing Tagalog and English naturally in every sentence.",
    LanguageStyle.ENGLISH: "Write in clear, friendly English.",
    LanguageStyle.TAGALOG: "Write in Tagalog.",
    LanguageStyle.CASUAL: "Keep the tone casual and relaxed, like a message from a friend.",
    LanguageStyle.FORMAL: "Keep the tone polite and professional.",
}

FOLLOW_UP_PROMPT = """You write short Messenger follow-up messages for a business.

INSTRUCTIONS FROM THE BUSINESS (follow them exactly):
{instructions}

{language}

RECENT CONVERSATION WITH {name}:
{transcript}

{history}

Write ONE personalized follow-up to {name} of at most 3 sentences. Respond with ONLY valid JSON:
{{"message": "the follow-up text", "reasoning": "why this message fits"}}"""


def build_follow_up_prompt(
    rule: AutomationRule,
    contact_name: str,
    lines: list[ConversationLine],
    previous_messages: list[str],
) -> str:
    """Prompt for the next follow-up, listing earlier ones so they are not repeated."""
    follow_up_number = len(previous_messages) + 1
    if previous_messages:
        listed = "\n".join(f'Message #{i}: "{text}"' for i, text in enumerate(previous_messages, start=1))
        history = (
            f"This is FOLLOW-UP #{follow_up_number}. You already sent {len(previous_messages)} "
            f"message(s) to this person:\n{listed}\n"
            "The new message must be completely different from all of them: use a different "
            "greeting, sentence structure, angle and call to action."
        )
    else:
        history = f"This is FOLLOW-UP #{follow_up_number}, the first automated message to this person."

    return FOLLOW_UP_PROMPT.format(
        instructions=rule.custom_prompt.strip(),
        language=LANGUAGE_GUIDANCE[rule.language_style],
        name=contact_name,
        transcript=format_transcript(lines, contact_name, business_label="You (Business)"),
        history=history,
    )


class AutomationRunner:
    """Finds conversations due a follow-up, generates it and sends it."""

    def __init__(
        self,
        storage: StorageBackend,
        adapter: ChannelAdapter,
        provider: LLMProvider,
        graph: GraphAPIClient,
    ) -> None:
        self.storage = storage
        self.adapter = adapter
        self.provider = provider
        self.graph = graph

    async def _rule_pages(self, rule: AutomationRule) -> dict[str, FacebookPage]:
        """Pages a rule targets keyed by Facebook page id."""
        if rule.page_id:
            page = await self.storage.get_page(rule.page_id)
            if page is None or page.user_id != rule.user_id or not page.is_active:
                return {}
            return {page.facebook_page_id: page}
        pages = await self.storage.list_pages(rule.user_id, active_only=True)
        return {p.facebook_page_id: p for p in pages}

    async def _candidates(
        self,
        rule: AutomationRule,
        pages: dict[str, FacebookPage],
        cutoff: datetime,
    ) -> list[Conversation]:
        conversations, _ = await self.storage.list_conversations(
            page_ids=list(pages),
            status=ConversationStatus.ACTIVE,
            last_message_before=cutoff,
            limit=None,
        )
        # Longest silence first
        conversations.reverse()

        if rule.include_tag_ids:
            included = await self.storage.conversation_ids_with_tags(rule.include_tag_ids)
            conversations = [c for c in conversations if c.id in included]
        if rule.exclude_tag_ids:
            excluded = await self.storage.conversation_ids_with_tags(rule.exclude_tag_ids)
            conversations = [c for c in conversations if c.id not in excluded]

        stopped = {s.conversation_id for s in await self.storage.list_stops(rule.id)}
        return [c for c in conversations if c.id not in stopped]

    async def _generate(
        self,
        rule: AutomationRule,
        conversation: Conversation,
        page: FacebookPage,
        previous: list[str],
    ) -> str:
        lines = await fetch_transcript(self.graph, conversation, page.access_token)
        if not lines:
            lines = [ConversationLine(from_customer=True, text="Previous conversation")]
        prompt = build_follow_up_prompt(rule, conversation.sender_name, lines, previous)
        data = await self.provider.complete_json(prompt, temperature=0.8, max_tokens=400)
        text = str(data.get("message") or "").strip()
        if not text:
            raise AppException("Model returned an empty follow-up", code="LLM_ERROR")
        return text

    async def run_rule(self, rule: AutomationRule, now: datetime | None = None) -> AutomationRunResult:
        """Run one rule; returns counts or the reason it was skipped."""
        now = now or utc_now()
        result = AutomationRunResult(rule_id=rule.id)

        if not rule.enabled:
            result.skipped_reason = "Rule disabled"
            return result
        if not rule.is_within_active_hours(now):
            result.skipped_reason = "Outside active hours"
            return result
        threshold = rule.inactivity_threshold()
        if threshold is None:
            result.skipped_reason = "No time interval configured"
            return result

        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        sent_today = await self.storage.list_executions(rule.id, since=day_start, status=ExecutionStatus.SENT)
        remaining = rule.max_messages_per_day - len(sent_today)
        if remaining <= 0:
            result.skipped_reason = "Daily limit reached"
            return result

        pages = await self._rule_pages(rule)
        if not pages:
            result.skipped_reason = "No active pages"
            return result

        cutoff = now - threshold
        candidates = await self._candidates(rule, pages, cutoff)

        previous: dict[str, list[str]] = defaultdict(list)
        last_run: dict[str, datetime] = {}
        for execution in await self.storage.list_executions(rule.id, status=ExecutionStatus.SENT):
            if execution.generated_message:
                previous[execution.conversation_id].append(execution.generated_message)
            last_run[execution.conversation_id] = execution.created_at

        to_process = []
        for conversation in candidates:
            sent_count = len(previous.get(conversation.id, []))
            if rule.max_follow_ups and sent_count >= rule.max_follow_ups:
                await self.storage.save_stop(
                    AutomationStop(
                        rule_id=rule.id,
                        conversation_id=conversation.id,
                        sender_id=conversation.sender_id,
                        stopped_reason=StopReason.MAX_FOLLOW_UPS_REACHED,
                        follow_ups_sent=sent_count,
                    )
                )
                result.stopped += 1
                continue
            if conversation.id in last_run and last_run[conversation.id] > cutoff:
                continue
            to_process.append(conversation)

        result.eligible = len(to_process)
        logger.info("Automation rule running", rule_id=rule.id, eligible=result.eligible, quota=remaining)

        for conversation in to_process[:remaining]:
            page = pages[conversation.page_id]
            history = previous.get(conversation.id, [])
            follow_up_number = len(history) + 1
            execution = AutomationExecution(
                rule_id=rule.id,
                conversation_id=conversation.id,
                recipient_id=conversation.sender_id,
                follow_up_number=follow_up_number,
                status=ExecutionStatus.FAILED,
            )

            try:
                execution.generated_message = await self._generate(rule, conversation, page, history)
            except AppException as e:
                execution.error_message = e.message
                await self.storage.save_execution(execution)
                result.failed += 1
                logger.warning("Follow-up generation failed", rule_id=rule.id, error=e.message)
                continue

            send = await self.adapter.send_text(
                conversation.sender_id,
                execution.generated_message,
                page.access_token,
                message_tag=rule.message_tag,
            )
            if send.success:
                execution.status = ExecutionStatus.SENT
                result.sent += 1
            else:
                execution.error_message = send.error
                result.failed += 1
            await self.storage.save_execution(execution)

            if send.success and rule.max_follow_ups and follow_up_number >= rule.max_follow_ups:
                await self.storage.save_stop(
                    AutomationStop(
                        rule_id=rule.id,
                        conversation_id=conversation.id,
                        sender_id=conversation.sender_id,
                        stopped_reason=StopReason.MAX_FOLLOW_UPS_REACHED,
                        follow_ups_sent=follow_up_number,
                    )
                )
                result.stopped += 1

        rule.last_executed_at = now
        await self.storage.save_rule(rule)
        logger.info(
            "Automation rule finished",
            rule_id=rule.id,
            sent=result.sent,
            failed=result.failed,
            stopped=result.stopped,
        )
        return result

    async def run_all(self, now: datetime | None = None, user_id: str | None = None) -> list[AutomationRunResult]:
        """Run every enabled rule, optionally for one user."""
        results = []
        for rule in await self.storage.list_rules(user_id=user_id, enabled=True):
            results.append(await self.run_rule(rule, now))
        return results

    async def handle_reply(self, conversation: Conversation) -> int:
        """Stop follow-ups for a contact who replied and drop reply tags.

        Returns:
            Number of rules that reacted to the reply
        """
        page = await self.storage.get_page_by_facebook_id(conversation.page_id)
        if page is None:
            return 0

        handled = 0
        for rule in await self.storage.list_rules(user_id=page.user_id, enabled=True):
            if rule.page_id and rule.page_id != page.id:
                continue
            if not rule.stop_on_reply and not rule.remove_tag_on_reply:
                continue

            executions = await self.storage.list_executions(
                rule.id, conversation_id=conversation.id, status=ExecutionStatus.SENT
            )
            if rule.stop_on_reply and executions:
                await self.storage.save_stop(
                    AutomationStop(
                        rule_id=rule.id,
                        conversation_id=conversation.id,
                        sender_id=conversation.sender_id,
                        stopped_reason=StopReason.USER_REPLIED,
                        follow_ups_sent=len(executions),
                    )
                )
            if rule.remove_tag_on_reply:
                await self.storage.remove_conversation_tags([conversation.id], [rule.remove_tag_on_reply])
            handled += 1
            logger.info(
                "Reply handled for automation",
                rule_id=rule.id,
                sender=mask_id(conversation.sender_id),
            )
        return handled
