"""Modelos relacionados ao envio de mensagens."""
from pydantic import BaseModel
from typing import Optional


# ==================== MESSAGES ====================

class SendMessageBody(BaseModel):
    conversation_id: str
    content: str
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    instance_name: Optional[str] = None
