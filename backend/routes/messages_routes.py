"""
Outbound message endpoint.

- POST /messages/send - Persist an agent message and deliver it (automation flow first, Evolution fallback)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..models import SendMessageBody
from ..utils.auth_helpers import RequestContext, ensure_workspace_access, get_request_context
from ..whatsapp.container import WhatsAppContainer, get_container
from ..whatsapp.domain import MESSAGE_TYPES, OutboundMessage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.post("/send")
async def send_message(
    body: SendMessageBody,
    ctx: RequestContext = Depends(get_request_context),
    container: WhatsAppContainer = Depends(get_container),
):
    message_type = (body.message_type or "text").strip().lower()
    if message_type not in MESSAGE_TYPES:
        raise HTTPException(status_code=400, detail="Tipo de mensagem inválido")

    conversation = container.messages.get_conversation(body.conversation_id)
    workspace_id = ensure_workspace_access(ctx, conversation.get("workspace_id"))
    contact = container.messages.get_contact(str(conversation.get("contact_id")))
    phone = str(contact.get("phone") or "").strip()
    if not phone:
        raise HTTPException(status_code=400, detail="Contato sem telefone")

    instance_name = (body.instance_name or conversation.get("evolution_instance") or "").strip()
    if not instance_name:
        raise HTTPException(status_code=400, detail="Conversa sem instância WhatsApp")

    row = container.messages.insert_outbound(
        workspace_id=workspace_id,
        conversation_id=body.conversation_id,
        content=body.content,
        message_type=message_type,
        sender_id=ctx.user_id,
        file_url=body.file_url,
        file_name=body.file_name,
    )
    result = await container.outbound.send(
        OutboundMessage(
            workspace_id=workspace_id,
            conversation_id=body.conversation_id,
            message_id=str(row.get("id")),
            phone=phone,
            content=body.content,
            instance_name=instance_name,
            message_type=message_type,
            file_url=body.file_url,
            file_name=body.file_name,
        )
    )
    logger.info(f"Message {row.get('id')} sent via {result.path}")
    return {**result.to_dict(), "messageId": row.get("id")}
