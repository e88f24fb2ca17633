"""Modelos Pydantic da API.

Este módulo re-exporta todos os modelos para facilitar importações.
"""
from .connections import (
    ConnectionCreate,
    WebhookSecretRotate,
    AutomationWebhookUpdate,
)
from .messages import SendMessageBody

__all__ = [
    "ConnectionCreate",
    "WebhookSecretRotate",
    "AutomationWebhookUpdate",
    "SendMessageBody",
]
