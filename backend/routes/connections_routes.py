"""
WhatsApp connection lifecycle endpoints.

- GET /connections - List connections and quota
- POST /connections - Create connection
- GET /connections/{id}/status - Reconcile status with the provider
- GET /connections/{id}/qrcode - Current QR / pairing code
- POST /connections/{id}/reconnect - Restart instance
- POST /connections/{id}/pause - Logout instance
- DELETE /connections/{id} - Deprovision and delete
- GET /connections/{id}/logs - Provider logs
- POST /connections/{id}/webhook-secret/rotate - Rotate webhook secret
- GET /connections/{id}/stream - SSE with qrcode / state events
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from ..models import ConnectionCreate, WebhookSecretRotate
from ..utils.auth_helpers import RequestContext, ensure_workspace_access, get_request_context
from ..whatsapp.broadcaster import format_sse
from ..whatsapp.container import WhatsAppContainer, get_container
from ..whatsapp.domain import Connection
from ..whatsapp.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["Connections"])

SSE_KEEPALIVE_S = 15.0


# ==================== HELPER FUNCTIONS ====================

def _load_owned(container: WhatsAppContainer, connection_id: str, ctx: RequestContext) -> Connection:
    conn = container.connections.get(connection_id)
    ensure_workspace_access(ctx, conn.workspace_id)
    return conn


def _resolve_webhook_url(container: WhatsAppContainer, request: Request) -> str:
    configured = container.settings.webhook_url()
    if configured:
        return configured
    proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "http").strip().lower()
    host = request.headers.get("x-forwarded-host") or request.url.netloc
    return f"{proto}://{host}/api/webhooks/evolution"


# ==================== ENDPOINTS ====================

@router.get("")
async def list_connections(
    workspace_id: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    target = ensure_workspace_access(ctx, workspace_id)
    connections, quota = container.connections.list_connections(target)
    return {"connections": [c.to_dict() for c in connections], "quota": quota.to_dict()}


@router.post("")
async def create_connection(
    body: ConnectionCreate,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    target = ensure_workspace_access(ctx, body.workspace_id)
    conn = await container.connections.create_connection(
        body.instance_name,
        body.history_recovery,
        target,
        webhook_url=body.webhook_url or _resolve_webhook_url(container, request),
    )
    logger.info(f"Connection created: {conn.instance_name} ({conn.status.value})")
    return {"success": True, "connection": conn.to_dict(), "qr_code": conn.to_dict()["qrCode"]}


@router.get("/{connection_id}/status")
async def connection_status(
    connection_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    _load_owned(container, connection_id, ctx)
    conn = await container.connections.refresh_status(connection_id)
    return {"success": True, "connection": conn.to_dict()}


@router.get("/{connection_id}/qrcode")
async def connection_qrcode(
    connection_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    _load_owned(container, connection_id, ctx)
    result = await container.connections.get_qr_code(connection_id)
    return {
        "success": True,
        "qr_code": result.get("qr_code"),
        "pairing_code": result.get("pairing_code"),
        "status": result.get("status"),
    }


@router.post("/{connection_id}/reconnect")
async def reconnect_connection(
    connection_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    _load_owned(container, connection_id, ctx)
    return await container.connections.reconnect_instance(connection_id)


@router.post("/{connection_id}/pause")
async def pause_connection(
    connection_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    _load_owned(container, connection_id, ctx)
    return await container.connections.pause_instance(connection_id)


@router.delete("/{connection_id}")
async def delete_connection(
    connection_id: str,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    try:
        _load_owned(container, connection_id, ctx)
    except NotFoundError:
        return {"success": True, "already_deleted": True}
    return await container.connections.delete_connection(connection_id)


@router.get("/{connection_id}/logs")
async def connection_logs(
    connection_id: str,
    limit: int = Query(50, ge=1, le=500),
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    _load_owned(container, connection_id, ctx)
    return {"logs": container.connections.get_logs(connection_id, limit=limit)}


@router.post("/{connection_id}/webhook-secret/rotate")
async def rotate_webhook_secret(
    connection_id: str,
    request: Request,
    body: Optional[WebhookSecretRotate] = None,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    _load_owned(container, connection_id, ctx)
    url = (body.webhook_url if body else None) or _resolve_webhook_url(container, request)
    return await container.connections.rotate_webhook_secret(connection_id, url)


@router.get("/{connection_id}/stream")
async def connection_stream(
    connection_id: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    """Server-sent ``qrcode`` / ``state`` events, backed by one reconciler per open stream."""
    conn = _load_owned(container, connection_id, ctx)

    async def event_stream():
        reconciler = container.reconciler_for(conn.id, conn.instance_name)
        try:
            yield format_sse("state", {"state": None, "status": conn.status.value})
            await reconciler.attach()
            while True:
                if await request.is_disconnected():
                    break
                event = await reconciler.next_event(timeout=SSE_KEEPALIVE_S)
                if event is None:
                    if reconciler.detached:
                        break
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event.event, event.data)
                if reconciler.connected:
                    break
        finally:
            reconciler.detach()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
