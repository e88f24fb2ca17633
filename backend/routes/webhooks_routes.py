"""
Webhook endpoints.

- POST /webhooks/evolution - Evolution API callbacks (authenticated by channel secret)
- POST /webhooks/evolution/{instance} - Same, with the instance in the path
- GET /webhooks/automation - Workspace automation webhook settings
- PUT /webhooks/automation - Save automation webhook
- DELETE /webhooks/automation - Remove automation webhook
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from ..models import AutomationWebhookUpdate
from ..utils.auth_helpers import RequestContext, ensure_workspace_access, get_request_context
from ..whatsapp.container import WhatsAppContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ==================== PROVIDER CALLBACKS ====================

@router.post("/evolution")
async def evolution_webhook(request: Request, container: WhatsAppContainer = Depends(get_container)):
    """Receive an Evolution callback. 400 malformed body, 401 bad secret, 200 otherwise."""
    body = await request.body()
    return await container.receiver.handle(body, request.headers)


@router.post("/evolution/{instance}")
async def evolution_webhook_by_instance(
    instance: str,
    request: Request,
    container: WhatsAppContainer = Depends(get_container),
):
    # the channel found by secret decides the instance; the path is informational
    body = await request.body()
    return await container.receiver.handle(body, request.headers)


# ==================== AUTOMATION SETTINGS ====================

@router.get("/automation")
async def get_automation_webhook(
    workspace_id: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    target = ensure_workspace_access(ctx, workspace_id)
    settings = container.automation_settings.get(target)
    return {"configured": settings is not None, "webhook": settings.masked() if settings else None}


@router.put("/automation")
async def save_automation_webhook(
    data: AutomationWebhookUpdate,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    target = ensure_workspace_access(ctx, data.workspace_id)
    saved = container.automation_settings.save(target, url=data.webhook_url, secret=data.webhook_secret)
    logger.info(f"Automation webhook saved for workspace {target}")
    return {"success": True, "webhook": saved.masked()}


@router.delete("/automation")
async def delete_automation_webhook(
    workspace_id: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    target = ensure_workspace_access(ctx, workspace_id)
    container.automation_settings.delete(target)
    return {"success": True}
