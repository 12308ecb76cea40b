"""Messenger webhook endpoints."""

import json
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse

from messenger_outreach.api.dependencies import (
    AdapterDep,
    AutomationRunnerDep,
    ContactTimingServiceDep,
    SettingsDep,
    SyncServiceDep,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/webhook", tags=["Webhooks"])


@router.get("")
async def verify_webhook(
    app_settings: SettingsDep,
    mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> Response:
    """Answer Facebook's subscription handshake with the challenge."""
    if (
        mode == "subscribe"
        and app_settings.webhook_verify_token
        and token == app_settings.webhook_verify_token
    ):
        logger.info("Webhook verified")
        return PlainTextResponse(challenge or "")

    logger.warning("Webhook verification failed", mode=mode)
    return PlainTextResponse("Verification token mismatch", status_code=status.HTTP_403_FORBIDDEN)


@router.post("")
async def receive_webhook(
    request: Request,
    app_settings: SettingsDep,
    adapter: AdapterDep,
    sync: SyncServiceDep,
    automations: AutomationRunnerDep,
    timing: ContactTimingServiceDep,
    x_hub_signature_256: Annotated[str | None, Header()] = None,
) -> Response:
    """Record page messaging events and react to contact replies.

    Facebook retries anything but a 200, so processing errors are logged
    and still acknowledged.
    """
    body = await request.body()
    if app_settings.facebook_app_secret and not adapter.validate_webhook(body, x_hub_signature_256 or ""):
        logger.warning("Invalid webhook signature")
        return JSONResponse({"status": "INVALID_SIGNATURE"}, status_code=status.HTTP_403_FORBIDDEN)

    try:
        payload: dict[str, Any] = json.loads(body or b"{}")
        events = await adapter.parse_webhook(payload)

        replies = 0
        for event in events:
            conversation = await sync.record_event(event)
            if conversation is None or event.is_echo:
                continue
            await timing.record_response(conversation, at=event.timestamp)
            replies += await automations.handle_reply(conversation)

        logger.info("Webhook processed", events=len(events), automation_replies=replies)
        return JSONResponse({"status": "EVENT_RECEIVED"})

    except Exception as e:
        logger.error("Error processing webhook", error=str(e), exc_info=True)
        return JSONResponse({"status": "ERROR"})
