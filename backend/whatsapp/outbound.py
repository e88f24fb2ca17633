from __future__ import annotations

from typing import Any, Optional

from .automation import AutomationSettingsStore, AutomationWebhookClient
from .domain import DeliveryResult, MessageStatus, OutboundMessage
from .errors import InvalidArgumentError, OutboundDeliveryError
from .evolution import EvolutionClient
from .observability import LogContext, Observability
from .store import MessageStore

PATH_AUTOMATION = "automation"
PATH_PROVIDER = "provider"

_MEDIA_TYPES = {"image", "video", "audio", "document"}


class OutboundRouter:
    """Delivers an agent message through the workspace automation flow, falling back to Evolution.

    There is no dedup key: a slow automation call that eventually succeeds can
    race the fallback send and deliver the message twice.
    """

    def __init__(
        self,
        *,
        automation_settings: AutomationSettingsStore,
        automation_client: AutomationWebhookClient,
        evolution: EvolutionClient,
        messages: MessageStore,
        obs: Observability,
    ):
        self._automation_settings = automation_settings
        self._automation_client = automation_client
        self._evolution = evolution
        self._messages = messages
        self._obs = obs

    async def send(self, msg: OutboundMessage) -> DeliveryResult:
        log_ctx = LogContext(workspace_id=msg.workspace_id, instance_name=msg.instance_name, correlation_id=msg.message_id)
        attempted: list[str] = []
        errors: dict[str, str] = {}

        try:
            target = self._automation_settings.resolve(msg.workspace_id)
        except Exception as e:
            # settings unreadable: go straight to the provider
            target = None
            self._obs.warning("outbound.automation.settings_unavailable", ctx=log_ctx, error=str(e))
        if target is not None:
            attempted.append(PATH_AUTOMATION)
            try:
                response = await self._automation_client.post(target, msg.automation_payload())
            except Exception as e:
                errors[PATH_AUTOMATION] = str(e)
                self._obs.warning("outbound.automation.failed", ctx=log_ctx, error=str(e))
            else:
                external_id = _external_id(response)
                self._finish(msg, MessageStatus.SENT, external_id, log_ctx)
                self._obs.info("outbound.sent", ctx=log_ctx, path=PATH_AUTOMATION)
                return DeliveryResult(True, PATH_AUTOMATION, attempted, external_id, response)

        attempted.append(PATH_PROVIDER)
        try:
            response = await self._send_direct(msg)
        except Exception as e:
            errors[PATH_PROVIDER] = str(e)
            self._finish(msg, MessageStatus.FAILED, None, log_ctx)
            self._obs.error("outbound.failed", ctx=log_ctx, attempted=",".join(attempted), error=str(e))
            raise OutboundDeliveryError(
                "Falha ao enviar mensagem por todos os caminhos disponíveis.",
                attempted=attempted,
                errors=errors,
            ) from e

        external_id = _external_id(response)
        self._finish(msg, MessageStatus.SENT, external_id, log_ctx)
        self._obs.info("outbound.sent", ctx=log_ctx, path=PATH_PROVIDER, external_id=external_id)
        return DeliveryResult(True, PATH_PROVIDER, attempted, external_id, response)

    def _finish(self, msg: OutboundMessage, status: MessageStatus, external_id: Optional[str], log_ctx: LogContext) -> None:
        """Final status write, retried once. A second failure is logged and not raised."""
        for attempt in (1, 2):
            try:
                self._messages.mark_status(msg.message_id, status, external_id=external_id)
                return
            except Exception as e:
                self._obs.error(
                    "outbound.status_write_failed",
                    ctx=log_ctx,
                    status=status.value,
                    attempt=attempt,
                    error=str(e),
                )

    async def _send_direct(self, msg: OutboundMessage) -> dict[str, Any]:
        kind = (msg.message_type or "text").strip().lower()
        if kind == "text":
            return await self._evolution.send_text(msg.instance_name, msg.phone, msg.content)
        if kind in _MEDIA_TYPES:
            if not msg.file_url:
                raise InvalidArgumentError("Mensagem de mídia sem file_url.", details={"message_id": msg.message_id})
            return await self._evolution.send_media(
                msg.instance_name,
                msg.phone,
                kind,
                msg.file_url,
                caption=msg.content,
                file_name=msg.file_name,
            )
        raise InvalidArgumentError("Tipo de mensagem não suportado.", details={"message_type": kind})


def _external_id(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    key = response.get("key")
    if isinstance(key, dict) and key.get("id"):
        return str(key["id"])
    for name in ("external_id", "externalId", "messageId", "id"):
        value = response.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
