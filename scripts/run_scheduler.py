#!/usr/bin/env python3
"""Run the scheduler jobs on a local timer.

Stands in for the hosted cron that calls ``/cron/send-scheduled``,
``/cron/ai-automations`` and ``/cron/retry-failed`` every tick, and
``/cron/sync-all-pages`` and ``/cron/refresh-tokens`` less often.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from messenger_outreach.api.dependencies import get_rate_limiter, get_storage
from messenger_outreach.core.config import settings
from messenger_outreach.core.logging import configure_logging
from messenger_outreach.models import TokenRefreshStatus
from messenger_outreach.services.ai.automation import AutomationRunner
from messenger_outreach.services.ai.provider import get_llm_provider
from messenger_outreach.services.channels.messenger import get_messenger_adapter
from messenger_outreach.services.contact_timing.service import ContactTimingService
from messenger_outreach.services.conversations.sync import ConversationSyncService
from messenger_outreach.services.dispatch.dispatcher import MessageDispatcher
from messenger_outreach.services.facebook.client import get_graph_client
from messenger_outreach.services.facebook.tokens import refresh_expiring_tokens

logger = structlog.get_logger()


async def tick(dispatcher: MessageDispatcher, runner: AutomationRunner | None) -> None:
    results = await dispatcher.dispatch_due()
    if results:
        print(f"Scheduled messages processed: {len(results)}")
        for result in results:
            print(f"  {result['message_id']}: {result['status']}")

    if runner is not None:
        for result in await runner.run_all():
            if result.skipped_reason:
                continue
            print(f"Rule {result.rule_id}: {result.sent} sent, {result.failed} failed, {result.stopped} stopped")

    for result in await dispatcher.retry_failed_messages():
        print(f"Retried {result['message_id']}: {result['status']}")


async def maintenance_tick(sync_service: ConversationSyncService) -> None:
    for result in await sync_service.sync_all_pages():
        if result.errors:
            print(f"Page {result.page_id}: sync failed ({result.errors[0]})")
        else:
            print(f"Page {result.page_id}: {result.inserted} new, {result.updated} updated")

    tokens = await refresh_expiring_tokens(sync_service.storage, sync_service.graph)
    refreshed = sum(r.status == TokenRefreshStatus.REFRESHED for r in tokens)
    failed = sum(r.status == TokenRefreshStatus.FAILED for r in tokens)
    print(f"Page tokens checked: {len(tokens)}, refreshed: {refreshed}, failed: {failed}")


async def main():
    parser = argparse.ArgumentParser(description="Run scheduled sends, retries, syncs and AI automations")
    parser.add_argument("--interval", type=float, default=60.0, help="Seconds between runs")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--no-automations", action="store_true", help="Skip AI automations")
    parser.add_argument(
        "--maintenance-every",
        type=int,
        default=60,
        help="Ticks between page syncs and token refreshes, 0 to disable",
    )

    args = parser.parse_args()

    configure_logging()

    storage = get_storage()
    adapter = get_messenger_adapter()
    graph = get_graph_client()
    dispatcher = MessageDispatcher(
        storage,
        adapter,
        rate_limiter=get_rate_limiter(),
        settings=settings,
        timing=ContactTimingService(storage),
    )
    runner = None if args.no_automations else AutomationRunner(storage, adapter, get_llm_provider(), graph)
    sync_service = ConversationSyncService(storage, graph)

    print(f"Scheduler started ({type(storage).__name__}, every {args.interval:.0f}s)")
    ticks = 0
    try:
        while True:
            try:
                await tick(dispatcher, runner)
                if args.maintenance_every and ticks % args.maintenance_every == 0:
                    await maintenance_tick(sync_service)
            except Exception as e:
                logger.error("Scheduler tick failed", error=str(e), exc_info=True)
            ticks += 1
            if args.once:
                break
            await asyncio.sleep(args.interval)
    finally:
        await graph.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nScheduler stopped")
