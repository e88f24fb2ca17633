from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

import httpx

from .automation import AutomationSettingsStore, AutomationWebhookClient
from .broadcaster import EventBroadcaster
from .channels import ChannelSecrets
from .config import WhatsAppSettings, load_whatsapp_settings
from .connection_manager import ConnectionManager
from .evolution import EvolutionClient
from .observability import Observability
from .outbound import OutboundRouter
from .receiver import WebhookReceiver
from .reconciler import StatusReconciler
from .store import ConnectionStore, MessageStore


@lru_cache(maxsize=1)
def get_whatsapp_container() -> "WhatsAppContainer":
    from ..supabase_client import supabase

    return WhatsAppContainer.build(client=supabase)


def get_container() -> "WhatsAppContainer":
    """FastAPI dependency; tests override it with a container built on fakes."""
    return get_whatsapp_container()


class WhatsAppContainer:
    """Process-wide object graph. The broadcaster lives here, never as a module global."""

    def __init__(
        self,
        *,
        settings: WhatsAppSettings,
        obs: Observability,
        store: ConnectionStore,
        messages: MessageStore,
        channels: ChannelSecrets,
        evolution: EvolutionClient,
        broadcaster: EventBroadcaster,
        connections: ConnectionManager,
        receiver: WebhookReceiver,
        automation_settings: AutomationSettingsStore,
        outbound: OutboundRouter,
    ):
        self.settings = settings
        self.obs = obs
        self.store = store
        self.messages = messages
        self.channels = channels
        self.evolution = evolution
        self.broadcaster = broadcaster
        self.connections = connections
        self.receiver = receiver
        self.automation_settings = automation_settings
        self.outbound = outbound

    @staticmethod
    def build(
        *,
        client: Any,
        settings: Optional[WhatsAppSettings] = None,
        evolution_transport: Optional[httpx.AsyncBaseTransport] = None,
        automation_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "WhatsAppContainer":
        settings = settings or load_whatsapp_settings()
        obs = Observability(logging.getLogger("whatsapp"))

        store = ConnectionStore(client, obs=obs, default_limit=settings.default_connection_limit)
        messages = MessageStore(client)
        channels = ChannelSecrets(client, obs=obs, grace_s=settings.secret_rotation_grace_s)
        evolution = EvolutionClient(
            base_url=settings.evolution_base_url,
            api_key=settings.evolution_api_key,
            timeout_s=settings.request_timeout_s,
            transport=evolution_transport,
        )
        broadcaster = EventBroadcaster()
        automation_settings = AutomationSettingsStore(
            client,
            fallback_url=settings.automation_webhook_url,
            fallback_secret=settings.automation_webhook_token,
        )
        automation_client = AutomationWebhookClient(transport=automation_transport)

        connections = ConnectionManager(
            store=store,
            channels=channels,
            evolution=evolution,
            broadcaster=broadcaster,
            obs=obs,
            settings=settings,
        )
        receiver = WebhookReceiver(
            channels=channels,
            store=store,
            messages=messages,
            broadcaster=broadcaster,
            automation_settings=automation_settings,
            automation_client=automation_client,
            obs=obs,
            settings=settings,
        )
        outbound = OutboundRouter(
            automation_settings=automation_settings,
            automation_client=automation_client,
            evolution=evolution,
            messages=messages,
            obs=obs,
        )
        return WhatsAppContainer(
            settings=settings,
            obs=obs,
            store=store,
            messages=messages,
            channels=channels,
            evolution=evolution,
            broadcaster=broadcaster,
            connections=connections,
            receiver=receiver,
            automation_settings=automation_settings,
            outbound=outbound,
        )

    def reconciler_for(self, connection_id: str, instance_name: str) -> StatusReconciler:
        return StatusReconciler(
            self.connections,
            connection_id=connection_id,
            instance_name=instance_name,
            broadcaster=self.broadcaster,
            obs=self.obs,
            policy=self.settings.reconciler,
        )
