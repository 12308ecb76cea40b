"""Endpoints called by the scheduler."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends

from messenger_outreach.api.dependencies import (
    AutomationRunnerDep,
    DispatcherDep,
    GraphDep,
    StorageDep,
    SyncServiceDep,
    verify_cron_secret,
)
from messenger_outreach.models import TokenRefreshStatus, utc_now
from messenger_outreach.services.facebook.tokens import refresh_expiring_tokens

logger = structlog.get_logger()

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_secret)])


@router.api_route("/send-scheduled", methods=["GET", "POST"])
async def send_scheduled(dispatcher: DispatcherDep) -> dict[str, Any]:
    """Send every scheduled message that is due."""
    results = await dispatcher.dispatch_due()
    return {
        "success": True,
        "processed": len(results),
        "results": results,
        "timestamp": utc_now().isoformat(),
    }


@router.api_route("/ai-automations", methods=["GET", "POST"])
async def run_automations(runner: AutomationRunnerDep) -> dict[str, Any]:
    """Run every enabled automation rule."""
    results = await runner.run_all()
    sent = sum(r.sent for r in results)
    logger.info("Automations run", rules=len(results), sent=sent)
    return {
        "success": True,
        "rules": len(results),
        "sent": sent,
        "failed": sum(r.failed for r in results),
        "results": [r.model_dump() for r in results],
        "timestamp": utc_now().isoformat(),
    }


@router.api_route("/retry-failed", methods=["GET", "POST"])
async def retry_failed(dispatcher: DispatcherDep) -> dict[str, Any]:
    """Resend retryable failures of finished messages."""
    results = await dispatcher.retry_failed_messages()
    return {
        "success": True,
        "retried": len(results),
        "results": results,
        "timestamp": utc_now().isoformat(),
    }


@router.api_route("/sync-all-pages", methods=["GET", "POST"])
async def sync_all_pages(sync_service: SyncServiceDep) -> dict[str, Any]:
    """Incrementally sync the conversations of every active page."""
    results = await sync_service.sync_all_pages()
    failed = [r for r in results if r.errors]
    return {
        "success": True,
        "pages": len(results),
        "synced": len(results) - len(failed),
        "failed": len(failed),
        "results": [
            {
                "page_id": r.page_id,
                "synced": r.inserted + r.updated,
                "error": r.errors[0] if r.errors else None,
            }
            for r in results
        ],
        "timestamp": utc_now().isoformat(),
    }


@router.api_route("/refresh-tokens", methods=["GET", "POST"])
async def refresh_tokens(storage: StorageDep, graph: GraphDep) -> dict[str, Any]:
    """Refresh page tokens that expire within a week."""
    results = await refresh_expiring_tokens(storage, graph)
    return {
        "success": True,
        "stats": {
            "checked": len(results),
            "refreshed": sum(r.status == TokenRefreshStatus.REFRESHED for r in results),
            "failed": sum(r.status == TokenRefreshStatus.FAILED for r in results),
        },
        "results": [r.model_dump(mode="json") for r in results],
        "timestamp": utc_now().isoformat(),
    }
