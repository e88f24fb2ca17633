from __future__ import annotations

import uuid
from typing import Any, Optional

from .broadcaster import EventBroadcaster
from .channels import ChannelSecrets, new_secret
from .config import WhatsAppSettings
from .domain import Connection, ConnectionStatus, HistoryRecovery, Quota, map_provider_state, utc_now
from .errors import InvalidArgumentError, NotFoundError, QuotaExceededError, WhatsAppError
from .evolution import EvolutionClient, validate_instance_name
from .observability import LogContext, Observability
from .parsers import extract_connected_phone, extract_pairing_code, extract_qrcode_value, extract_state
from .store import ConnectionStore


def parse_history_recovery(value: Any) -> HistoryRecovery:
    try:
        return HistoryRecovery(str(value or "none").strip().lower())
    except ValueError:
        raise InvalidArgumentError(
            "Política de recuperação de histórico inválida.",
            details={"history_recovery": value, "allowed": [h.value for h in HistoryRecovery]},
        )


class ConnectionManager:
    """Lifecycle of WhatsApp instances: provision, observe, pair, pause, tear down.

    Remote calls are never retried inline. A transient provider failure is
    raised to the caller; the status poller retries on its next tick.
    """

    def __init__(
        self,
        *,
        store: ConnectionStore,
        channels: ChannelSecrets,
        evolution: EvolutionClient,
        broadcaster: EventBroadcaster,
        obs: Observability,
        settings: WhatsAppSettings,
    ):
        self._store = store
        self._channels = channels
        self._evolution = evolution
        self._broadcaster = broadcaster
        self._obs = obs
        self._settings = settings

    def _ctx(self, conn: Connection, correlation_id: Optional[str] = None) -> LogContext:
        return LogContext(
            workspace_id=conn.workspace_id,
            provider=self._evolution.provider,
            instance_name=conn.instance_name,
            connection_id=conn.id,
            correlation_id=correlation_id,
        )

    # ==================== READS ====================

    def get(self, connection_id: str) -> Connection:
        return self._store.get(connection_id)

    def list_connections(self, workspace_id: str) -> tuple[list[Connection], Quota]:
        return self._store.list_for_workspace(workspace_id)

    def get_logs(self, connection_id: str, limit: int = 50) -> list[dict[str, Any]]:
        conn = self._store.get(connection_id)
        return self._store.list_logs(conn.id, limit=limit)

    # ==================== CREATE ====================

    async def create_connection(
        self,
        instance_name: str,
        history_recovery: Any,
        workspace_id: str,
        *,
        webhook_url: Optional[str] = None,
    ) -> Connection:
        name = validate_instance_name(instance_name)
        policy = parse_history_recovery(history_recovery)
        if not (workspace_id or "").strip():
            raise InvalidArgumentError("workspace_id é obrigatório.")
        correlation_id = str(uuid.uuid4())
        log_ctx = LogContext(
            workspace_id=workspace_id,
            provider=self._evolution.provider,
            instance_name=name,
            correlation_id=correlation_id,
        )

        quota = self._store.quota(workspace_id)
        if not quota.available:
            self._obs.warning("whatsapp.create.quota_exceeded", ctx=log_ctx, used=quota.used, limit=quota.limit)
            raise QuotaExceededError(
                "Limite de conexões do workspace atingido.",
                used=quota.used,
                limit=quota.limit,
            )
        if self._store.instance_exists(name):
            raise InvalidArgumentError("Já existe uma conexão com esse nome de instância.", details={"instance_name": name})

        conn = self._store.insert(workspace_id=workspace_id, instance_name=name, history_recovery=policy)
        log_ctx = self._ctx(conn, correlation_id)
        self._obs.info("whatsapp.create.local_inserted", ctx=log_ctx, history_recovery=policy.value)

        try:
            channel = self._channels.issue(workspace_id, name)
            instance_token = new_secret()
            self._store.save_secret(conn.id, token=instance_token, evolution_url=self._settings.evolution_base_url)
            url = webhook_url or self._settings.webhook_url()
            result = await self._evolution.create_instance(
                name,
                webhook_url=url or None,
                webhook_headers={self._settings.webhook_secret_header: channel.webhook_secret},
                sync_full_history=policy != HistoryRecovery.NONE,
                token=instance_token,
            )
        except Exception as e:
            self._obs.warning(
                "whatsapp.create.rollback",
                ctx=log_ctx,
                error=str(e),
                code=getattr(e, "code", type(e).__name__),
            )
            self._store.remove_if_exists(conn.id)
            self._channels.revoke(name)
            raise

        qr = extract_qrcode_value(result)
        metadata = {"provider": self._evolution.provider, "create_response": _without_qr(result)}
        if extract_state(result) == "open":
            conn = self._store.upsert_status(
                name,
                ConnectionStatus.CONNECTED,
                phone_number=extract_connected_phone(result),
                last_activity_at=utc_now(),
                metadata=metadata,
            )
        elif qr:
            conn = self._store.upsert_status(name, ConnectionStatus.QR, qr_code=qr, metadata=metadata)
            self._broadcaster.broadcast(name, "qrcode", {"code": qr, "pairingCode": extract_pairing_code(result), "count": None})
        else:
            conn = self._store.upsert_status(name, ConnectionStatus.CREATING, metadata=metadata)

        self._store.append_log(
            conn.id,
            event_type="instance_created",
            message=f"Instância {name} criada no provedor.",
            correlation_id=correlation_id,
            metadata={"status": conn.status.value},
        )
        self._obs.info("whatsapp.create.done", ctx=log_ctx, status=conn.status.value)
        return conn

    # ==================== STATUS / QR ====================

    async def get_connection_status(self, connection_id: str) -> Connection:
        """Provider state persisted locally. Raises ``NotFoundError`` if the provider forgot the instance."""
        conn = self._store.get(connection_id)
        return await self._sync_status(conn)

    async def refresh_status(self, connection_id: str) -> Connection:
        """Like ``get_connection_status`` but an instance unknown to the provider is just disconnected."""
        conn = self._store.get(connection_id)
        try:
            return await self._sync_status(conn)
        except NotFoundError:
            self._obs.info("whatsapp.status.remote_missing", ctx=self._ctx(conn))
            updated = self._store.upsert_status(conn.instance_name, ConnectionStatus.DISCONNECTED)
            self._broadcaster.broadcast(conn.instance_name, "state", {"state": "close", "status": updated.status.value})
            return updated

    async def _sync_status(self, conn: Connection) -> Connection:
        observed = utc_now()
        result = await self._evolution.connection_state(conn.instance_name)
        state = extract_state(result)
        status = map_provider_state(state)

        phone = None
        last_activity = None
        if status == ConnectionStatus.CONNECTED:
            last_activity = observed
            phone = extract_connected_phone(result)
            if not phone and not conn.phone_number:
                phone = await self._lookup_owner_phone(conn)

        updated = self._store.upsert_status(
            conn.instance_name,
            status,
            phone_number=phone,
            last_activity_at=last_activity,
            observed_at=observed,
        )
        self._broadcaster.broadcast(conn.instance_name, "state", {"state": state, "status": updated.status.value})
        return updated

    async def _lookup_owner_phone(self, conn: Connection) -> Optional[str]:
        try:
            instances = await self._evolution.fetch_instances()
        except WhatsAppError as e:
            self._obs.warning("whatsapp.status.owner_lookup_failed", ctx=self._ctx(conn), code=e.code)
            return None
        for inst in instances:
            name = inst.get("name") or inst.get("instanceName")
            if name == conn.instance_name:
                return extract_connected_phone(inst)
        return None

    async def get_qr_code(self, connection_id: str) -> dict[str, Any]:
        """Current pairing credentials from the provider; they may already be expired."""
        conn = self._store.get(connection_id)
        result = await self._evolution.connect(conn.instance_name)

        if extract_state(result) == "open":
            updated = self._store.upsert_status(conn.instance_name, ConnectionStatus.CONNECTED, last_activity_at=utc_now())
            self._broadcaster.broadcast(conn.instance_name, "state", {"state": "open", "status": updated.status.value})
            return {"qr_code": None, "pairing_code": None, "status": updated.status.value}

        qr = extract_qrcode_value(result)
        pairing = extract_pairing_code(result)
        status = conn.status
        if qr and conn.status != ConnectionStatus.CONNECTED:
            status = self._store.upsert_status(conn.instance_name, ConnectionStatus.QR, qr_code=qr).status
        if qr or pairing:
            self._broadcaster.broadcast(
                conn.instance_name,
                "qrcode",
                {"code": qr, "pairingCode": pairing, "count": result.get("count")},
            )
        return {"qr_code": qr, "pairing_code": pairing, "status": status.value}

    # ==================== RECONNECT / PAUSE ====================

    async def reconnect_instance(self, connection_id: str) -> dict[str, Any]:
        conn = self._store.get(connection_id)
        log_ctx = self._ctx(conn)

        state = extract_state(await self._evolution.connection_state(conn.instance_name))
        if map_provider_state(state) == ConnectionStatus.CONNECTED:
            updated = self._store.upsert_status(conn.instance_name, ConnectionStatus.CONNECTED, last_activity_at=utc_now())
            self._obs.info("whatsapp.reconnect.already_connected", ctx=log_ctx)
            return {"success": True, "status": updated.status.value, "already_connected": True}

        await self._evolution.restart(conn.instance_name)
        updated = self._store.upsert_status(conn.instance_name, ConnectionStatus.CONNECTING)
        self._store.append_log(conn.id, event_type="instance_restarted", message=f"Instância {conn.instance_name} reiniciada.")
        self._obs.info("whatsapp.reconnect.restarted", ctx=log_ctx, status=updated.status.value)
        return {"success": True, "status": updated.status.value, "already_connected": False}

    async def pause_instance(self, connection_id: str) -> dict[str, Any]:
        conn = self._store.get(connection_id)
        log_ctx = self._ctx(conn)
        already = False
        try:
            await self._evolution.logout(conn.instance_name)
        except NotFoundError:
            already = True
            self._obs.info("whatsapp.pause.remote_missing", ctx=log_ctx)

        updated = self._store.upsert_status(conn.instance_name, ConnectionStatus.DISCONNECTED)
        channel = self._channels.get_by_instance(conn.instance_name)
        if channel is not None:
            self._channels.update_status(channel, ConnectionStatus.DISCONNECTED.value)
        self._store.append_log(conn.id, event_type="instance_logout", message=f"Instância {conn.instance_name} pausada.")
        self._broadcaster.broadcast(conn.instance_name, "state", {"state": "close", "status": updated.status.value})
        return {"success": True, "status": updated.status.value, "already_logged_out": already}

    # ==================== DELETE ====================

    async def delete_connection(self, connection_id: str) -> dict[str, Any]:
        """Two phases: remote deprovision, then local removal. Repeating the call is a success."""
        try:
            conn = self._store.get(connection_id)
        except NotFoundError:
            return {"success": True, "already_deleted": True}

        remote = await self.deprovision_remote(conn)
        self.delete_local(conn)
        return {"success": True, "already_deleted": False, "remote": remote}

    async def deprovision_remote(self, conn: Connection) -> str:
        try:
            await self._evolution.delete(conn.instance_name)
        except NotFoundError:
            self._obs.info("whatsapp.delete.remote_already_gone", ctx=self._ctx(conn))
            return "already_gone"
        self._obs.info("whatsapp.delete.remote_deleted", ctx=self._ctx(conn))
        return "deleted"

    def delete_local(self, conn: Connection) -> None:
        self._store.delete(conn.id)
        self._obs.info("whatsapp.delete.local_deleted", ctx=self._ctx(conn))

    # ==================== WEBHOOK SECRET ====================

    async def rotate_webhook_secret(self, connection_id: str, webhook_url: Optional[str] = None) -> dict[str, Any]:
        conn = self._store.get(connection_id)
        url = webhook_url or self._settings.webhook_url()
        if not url:
            raise InvalidArgumentError("URL pública do webhook não configurada.")

        channel = self._channels.rotate(conn.instance_name)
        try:
            await self._evolution.set_webhook(
                conn.instance_name,
                url,
                webhook_headers={self._settings.webhook_secret_header: channel.webhook_secret},
            )
        except WhatsAppError:
            self._channels.cancel_rotation(conn.instance_name)
            raise

        self._store.append_log(conn.id, event_type="webhook_secret_rotated", message="Segredo do webhook rotacionado.")
        expires = channel.previous_secret_expires_at
        return {"success": True, "previous_secret_expires_at": expires.isoformat() if expires else None}


def _without_qr(result: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in (result or {}).items() if k not in ("qrcode", "qr", "base64")}
