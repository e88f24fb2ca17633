"""Modelos relacionados a conexões WhatsApp e webhooks de automação."""
from pydantic import BaseModel
from typing import Optional


# ==================== CONNECTIONS ====================

class ConnectionCreate(BaseModel):
    instance_name: str
    history_recovery: str = "none"
    workspace_id: Optional[str] = None
    webhook_url: Optional[str] = None


class WebhookSecretRotate(BaseModel):
    webhook_url: Optional[str] = None


# ==================== AUTOMATION WEBHOOKS ====================

class AutomationWebhookUpdate(BaseModel):
    webhook_url: str
    webhook_secret: Optional[str] = None
    workspace_id: Optional[str] = None
