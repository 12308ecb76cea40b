"""API routes."""

from messenger_outreach.api.routes.ai import router as ai_router
from messenger_outreach.api.routes.auth import router as auth_router
from messenger_outreach.api.routes.automations import router as automations_router
from messenger_outreach.api.routes.contact_timing import router as contact_timing_router
from messenger_outreach.api.routes.conversations import router as conversations_router
from messenger_outreach.api.routes.cron import router as cron_router
from messenger_outreach.api.routes.diagnostics import router as diagnostics_router
from messenger_outreach.api.routes.health import router as health_router
from messenger_outreach.api.routes.messages import router as messages_router
from messenger_outreach.api.routes.pages import router as pages_router
from messenger_outreach.api.routes.pipeline import router as pipeline_router
from messenger_outreach.api.routes.tags import router as tags_router
from messenger_outreach.api.routes.uploads import router as uploads_router
from messenger_outreach.api.routes.webhooks import router as webhooks_router

__all__ = [
    "ai_router",
    "auth_router",
    "automations_router",
    "contact_timing_router",
    "conversations_router",
    "cron_router",
    "diagnostics_router",
    "health_router",
    "messages_router",
    "pages_router",
    "pipeline_router",
    "tags_router",
    "uploads_router",
    "webhooks_router",
]
