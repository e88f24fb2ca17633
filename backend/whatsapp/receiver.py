from __future__ import annotations

import json
from typing import Any, Mapping, Optional

from ..utils.phone_utils import normalize_phone_number
from .automation import AutomationSettingsStore, AutomationWebhookClient
from .broadcaster import EventBroadcaster
from .channels import ChannelSecrets
from .config import WhatsAppSettings
from .domain import Channel, ConnectionStatus, map_provider_state, utc_now, utc_now_iso
from .errors import BadRequestError, NotFoundError, UnauthorizedError
from .observability import LogContext, Observability
from .parsers import (
    EVENT_CONNECTION_UPDATE,
    EVENT_MESSAGES_UPDATE,
    EVENT_MESSAGES_UPSERT,
    EVENT_QRCODE_UPDATED,
    MESSAGE_EVENTS,
    extract_connected_phone,
    extract_instance,
    extract_qr_event,
    normalize_event,
    parse_inbound_messages,
    parse_message_acks,
    unwrap_data,
)
from .store import ConnectionStore, MessageStore


class WebhookReceiver:
    """Provider callbacks: authenticate by channel secret, then update state and fan out.

    The provider always gets a 200 for anything recoverable here. Only a
    malformed body (400) or a bad secret (401) is rejected, and neither
    touches any state.
    """

    def __init__(
        self,
        *,
        channels: ChannelSecrets,
        store: ConnectionStore,
        messages: MessageStore,
        broadcaster: EventBroadcaster,
        automation_settings: AutomationSettingsStore,
        automation_client: AutomationWebhookClient,
        obs: Observability,
        settings: WhatsAppSettings,
    ):
        self._channels = channels
        self._store = store
        self._messages = messages
        self._broadcaster = broadcaster
        self._automation_settings = automation_settings
        self._automation_client = automation_client
        self._obs = obs
        self._settings = settings

    async def handle(self, body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        if not body or not body.strip():
            # liveness / test ping from the provider
            return {"success": True, "ping": True}
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise BadRequestError(details={"error": str(e)})
        if not isinstance(payload, dict):
            raise BadRequestError("Payload deve ser um objeto JSON.")

        lowered = {str(k).lower(): v for k, v in headers.items()}
        channel = self._channels.authenticate(lowered.get(self._settings.webhook_secret_header))
        if channel is None:
            self._obs.warning(
                "webhook.unauthorized",
                instance=extract_instance(payload),
                provider_event=payload.get("event"),
            )
            raise UnauthorizedError()

        instance = channel.instance
        claimed = extract_instance(payload)
        if claimed and claimed != instance:
            self._obs.warning("webhook.instance_mismatch", ctx=LogContext(instance_name=instance), claimed=claimed)
        event = normalize_event(payload.get("event"))
        log_ctx = LogContext(workspace_id=channel.workspace_id, provider="evolution", instance_name=instance)
        self._obs.info("webhook.received", ctx=log_ctx, provider_event=event or None)

        result: dict[str, Any] = {"success": True, "event": event, "instance": instance}
        handled = False
        data = unwrap_data(payload)

        if event == EVENT_QRCODE_UPDATED:
            result.update(self._on_qrcode(instance, payload, log_ctx))
            handled = True

        state = data.get("state") if isinstance(data, dict) else None
        if state:
            result.update(self._on_state(channel, state, payload, log_ctx))
            handled = True
        elif event == EVENT_CONNECTION_UPDATE:
            # no state, nothing to persist
            self._obs.info("webhook.state.missing", ctx=log_ctx)

        if event == EVENT_MESSAGES_UPSERT:
            result.update(self._on_messages(channel, payload, log_ctx))
            handled = True
        elif event == EVENT_MESSAGES_UPDATE:
            result.update(self._on_acks(channel, payload, log_ctx))
            handled = True

        if not handled:
            result["ignored"] = True

        if event in MESSAGE_EVENTS and self._settings.forward_inbound_events:
            result["forwarded"] = await self._forward(channel, event, payload, log_ctx)
        return result

    # ==================== EVENTS ====================

    def _on_qrcode(self, instance: str, payload: dict[str, Any], log_ctx: LogContext) -> dict[str, Any]:
        qr = extract_qr_event(payload)
        delivered = self._broadcaster.broadcast(instance, "qrcode", qr)
        if qr.get("code"):
            try:
                self._store.upsert_status(instance, ConnectionStatus.QR, qr_code=qr["code"])
            except NotFoundError:
                self._obs.info("webhook.qrcode.no_connection", ctx=log_ctx)
        return {"broadcast": delivered}

    def _on_state(self, channel: Channel, state: Any, payload: dict[str, Any], log_ctx: LogContext) -> dict[str, Any]:
        raw_state = str(state or "").strip().lower()
        status = map_provider_state(raw_state)
        now = utc_now()
        phone = extract_connected_phone(payload) if status == ConnectionStatus.CONNECTED else None
        try:
            conn = self._store.upsert_status(
                channel.instance,
                status,
                phone_number=phone,
                last_activity_at=now,
                observed_at=now,
            )
            stored_status: Optional[str] = conn.status.value
        except NotFoundError:
            stored_status = None
            self._obs.info("webhook.state.no_connection", ctx=log_ctx, state=raw_state)
        self._channels.update_status(channel, status.value)
        delivered = self._broadcaster.broadcast(channel.instance, "state", {"state": raw_state, "status": status.value})
        return {"state": raw_state, "status": stored_status or status.value, "broadcast": delivered}

    def _workspace_for(self, channel: Channel) -> Optional[str]:
        if channel.workspace_id:
            return channel.workspace_id
        try:
            return self._store.find_by_instance(channel.instance).workspace_id
        except NotFoundError:
            return None

    def _on_messages(self, channel: Channel, payload: dict[str, Any], log_ctx: LogContext) -> dict[str, Any]:
        workspace_id = self._workspace_for(channel)
        if not workspace_id:
            self._obs.warning("webhook.message.no_workspace", ctx=log_ctx)
            return {"stored": 0, "duplicates": 0, "skipped": 0}

        connection_id: Optional[str] = None
        try:
            connection_id = self._store.find_by_instance(channel.instance).id
        except NotFoundError:
            pass

        stored = duplicates = skipped = 0
        for msg in parse_inbound_messages(payload):
            if msg.from_me or msg.is_group or not msg.phone:
                skipped += 1
                continue
            if msg.external_id and self._messages.find_by_external_id(workspace_id, msg.external_id):
                duplicates += 1
                continue
            phone = normalize_phone_number(msg.phone) or msg.phone
            contact = self._messages.find_or_create_contact(workspace_id, phone, name=msg.push_name)
            conversation = self._messages.find_or_create_conversation(
                workspace_id,
                str(contact.get("id")),
                connection_id=connection_id,
                instance_name=channel.instance,
            )
            row = self._messages.insert_inbound(workspace_id, str(conversation.get("id")), msg)
            if row is None:
                duplicates += 1
                continue
            self._messages.touch_conversation(conversation, at=msg.timestamp or utc_now())
            stored += 1

        if duplicates:
            self._obs.info("webhook.message.duplicates", ctx=log_ctx, count=duplicates)
        return {"stored": stored, "duplicates": duplicates, "skipped": skipped}

    def _on_acks(self, channel: Channel, payload: dict[str, Any], log_ctx: LogContext) -> dict[str, Any]:
        workspace_id = self._workspace_for(channel)
        if not workspace_id:
            return {"acks": 0}
        updated = 0
        for external_id, status in parse_message_acks(payload):
            updated += self._messages.update_status_by_external_id(workspace_id, external_id, status)
        self._obs.debug("webhook.acks", ctx=log_ctx, updated=updated)
        return {"acks": updated}

    async def _forward(self, channel: Channel, event: str, payload: dict[str, Any], log_ctx: LogContext) -> bool:
        workspace_id = self._workspace_for(channel)
        if not workspace_id:
            return False
        try:
            target = self._automation_settings.resolve(workspace_id, allow_global=True)
        except Exception as e:
            self._obs.warning("webhook.forward.settings_unavailable", ctx=log_ctx, error=str(e))
            return False
        if target is None:
            return False
        body = {
            "event": event,
            "instance": channel.instance,
            "workspace_id": workspace_id,
            "data": payload.get("data"),
            "received_at": utc_now_iso(),
        }
        try:
            await self._automation_client.post(target, body)
        except Exception as e:
            # forwarding is optional; the provider still gets its 200
            self._obs.warning("webhook.forward.failed", ctx=log_ctx, target=target.source, error=str(e))
            return False
        return True
