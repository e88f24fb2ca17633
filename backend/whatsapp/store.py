from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from ..utils.db_helpers import all_rows, first_row, is_missing_table_or_schema_error, is_unique_violation
from .domain import (
    Connection,
    ConnectionStatus,
    HistoryRecovery,
    InboundMessage,
    MessageStatus,
    Quota,
    can_transition,
    utc_now,
    utc_now_iso,
)
from .errors import InvalidArgumentError, NotFoundError
from .observability import LogContext, Observability

_CONNECTION_COLUMNS = (
    "id, workspace_id, instance_name, status, history_recovery, qr_code, phone_number, "
    "created_at, updated_at, last_activity_at, metadata"
)

_UNSET: Any = object()


class ConnectionStore:
    """Persistence of WhatsApp connections, their secrets and provider logs.

    Concurrent writers (webhook receiver and status poller) are reconciled with
    last write wins on ``updated_at``: every status write carries the moment it
    was observed, and the UPDATE only matches rows older than that.
    """

    def __init__(self, client: Any, *, obs: Observability, default_limit: int = 1):
        self._db = client
        self._obs = obs
        self._default_limit = max(0, int(default_limit))

    # ==================== READS ====================

    def get(self, connection_id: str) -> Connection:
        res = self._db.table("connections").select(_CONNECTION_COLUMNS).eq("id", connection_id).limit(1).execute()
        row = first_row(res)
        if not row:
            raise NotFoundError("Conexão não encontrada.", details={"connection_id": connection_id})
        return Connection.from_row(row)

    def find_by_instance(self, instance_name: str) -> Connection:
        res = self._db.table("connections").select(_CONNECTION_COLUMNS).eq("instance_name", instance_name).limit(1).execute()
        row = first_row(res)
        if not row:
            raise NotFoundError("Conexão não encontrada.", details={"instance_name": instance_name})
        return Connection.from_row(row)

    def instance_exists(self, instance_name: str) -> bool:
        res = self._db.table("connections").select("id").eq("instance_name", instance_name).limit(1).execute()
        return bool(first_row(res))

    def list_for_workspace(self, workspace_id: str) -> tuple[list[Connection], Quota]:
        res = (
            self._db.table("connections")
            .select(_CONNECTION_COLUMNS)
            .eq("workspace_id", workspace_id)
            .order("created_at", desc=True)
            .execute()
        )
        connections = [Connection.from_row(r) for r in all_rows(res)]
        return connections, Quota(used=len(connections), limit=self._connection_limit(workspace_id))

    def quota(self, workspace_id: str) -> Quota:
        res = self._db.table("connections").select("id", count="exact").eq("workspace_id", workspace_id).execute()
        used = getattr(res, "count", None)
        if used is None:
            used = len(all_rows(res))
        return Quota(used=int(used), limit=self._connection_limit(workspace_id))

    def _connection_limit(self, workspace_id: str) -> int:
        try:
            res = self._db.table("workspace_limits").select("connection_limit").eq("workspace_id", workspace_id).limit(1).execute()
        except Exception as e:
            if is_missing_table_or_schema_error(e, "workspace_limits"):
                return self._default_limit
            raise
        row = first_row(res)
        value = row.get("connection_limit")
        if value is None:
            return self._default_limit
        return int(value)

    # ==================== WRITES ====================

    def insert(
        self,
        *,
        workspace_id: str,
        instance_name: str,
        history_recovery: HistoryRecovery,
        status: ConnectionStatus = ConnectionStatus.CREATING,
    ) -> Connection:
        now = utc_now_iso()
        payload = {
            "id": str(uuid.uuid4()),
            "workspace_id": workspace_id,
            "instance_name": instance_name,
            "status": status.value,
            "history_recovery": history_recovery.value,
            "created_at": now,
            # status writes filter on updated_at, so it is never left null
            "updated_at": now,
        }
        try:
            res = self._db.table("connections").insert(payload).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise InvalidArgumentError("Já existe uma conexão com esse nome de instância.", details={"instance_name": instance_name})
            raise
        return Connection.from_row(first_row(res) or payload)

    def upsert_status(
        self,
        instance_name: str,
        status: ConnectionStatus,
        *,
        qr_code: Any = _UNSET,
        phone_number: Optional[str] = None,
        last_activity_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
        observed_at: Optional[datetime] = None,
    ) -> Connection:
        """Set the status observed at ``observed_at`` unless a newer write already landed."""
        observed = observed_at or utc_now()
        current = self.find_by_instance(instance_name)
        ctx = LogContext(workspace_id=current.workspace_id, instance_name=instance_name, connection_id=current.id)

        if not can_transition(current.status, status):
            self._obs.info("store.status.transition_rejected", ctx=ctx, current=current.status.value, new=status.value)
            return current
        if current.updated_at is not None and current.updated_at >= observed:
            self._obs.debug("store.status.stale_write", ctx=ctx, new=status.value)
            return current

        observed_iso = observed.isoformat()
        fields: dict[str, Any] = {"status": status.value, "updated_at": observed_iso}
        if status == ConnectionStatus.CONNECTED:
            fields["qr_code"] = None
        elif qr_code is not _UNSET:
            fields["qr_code"] = qr_code
        if phone_number:
            fields["phone_number"] = phone_number
        if last_activity_at is not None:
            fields["last_activity_at"] = last_activity_at.isoformat()
        if metadata is not None:
            fields["metadata"] = metadata

        res = (
            self._db.table("connections")
            .update(fields)
            .eq("instance_name", instance_name)
            .lt("updated_at", observed_iso)
            .execute()
        )
        row = first_row(res)
        if not row:
            # a concurrent writer with a later observation won
            self._obs.debug("store.status.lost_race", ctx=ctx, new=status.value)
            return self.find_by_instance(instance_name)
        self._obs.info("store.status.updated", ctx=ctx, status=status.value)
        return Connection.from_row(row)

    def delete(self, connection_id: str) -> None:
        conn = self.get(connection_id)
        self._db.table("connection_secrets").delete().eq("connection_id", connection_id).execute()
        self._db.table("channels").delete().eq("instance", conn.instance_name).execute()
        self._db.table("connections").delete().eq("id", connection_id).execute()

    def remove_if_exists(self, connection_id: str) -> None:
        """Rollback helper for a half-created connection."""
        self._db.table("connection_secrets").delete().eq("connection_id", connection_id).execute()
        self._db.table("connections").delete().eq("id", connection_id).execute()

    def save_secret(self, connection_id: str, *, token: str, evolution_url: str) -> None:
        self._db.table("connection_secrets").insert(
            {"connection_id": connection_id, "token": token, "evolution_url": evolution_url}
        ).execute()

    # ==================== PROVIDER LOGS ====================

    def append_log(
        self,
        connection_id: Optional[str],
        *,
        event_type: str,
        message: str,
        level: str = "info",
        correlation_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        payload = {
            "connection_id": connection_id,
            "correlation_id": correlation_id or str(uuid.uuid4()),
            "event_type": event_type,
            "level": level,
            "message": message,
            "metadata": metadata or {},
            "created_at": utc_now_iso(),
        }
        try:
            self._db.table("provider_logs").insert(payload).execute()
        except Exception as e:
            # logs never fail the operation that produced them
            self._obs.warning("store.provider_log.failed", connection_id=connection_id, event_type=event_type, error=str(e))

    def list_logs(self, connection_id: str, limit: int = 50) -> list[dict[str, Any]]:
        res = (
            self._db.table("provider_logs")
            .select("*")
            .eq("connection_id", connection_id)
            .order("created_at", desc=True)
            .limit(max(1, min(int(limit), 500)))
            .execute()
        )
        return all_rows(res)


class MessageStore:
    """Contacts, conversations and messages as consumed by the webhook and outbound paths."""

    def __init__(self, client: Any):
        self._db = client

    def find_or_create_contact(self, workspace_id: str, phone: str, *, name: Optional[str] = None) -> dict[str, Any]:
        res = self._db.table("contacts").select("*").eq("workspace_id", workspace_id).eq("phone", phone).limit(1).execute()
        row = first_row(res)
        if row:
            return row
        now = utc_now_iso()
        payload = {
            "id": str(uuid.uuid4()),
            "workspace_id": workspace_id,
            "phone": phone,
            "name": (name or "").strip() or phone,
            "created_at": now,
            "updated_at": now,
        }
        res = self._db.table("contacts").insert(payload).execute()
        return first_row(res) or payload

    def find_or_create_conversation(
        self,
        workspace_id: str,
        contact_id: str,
        *,
        connection_id: Optional[str] = None,
        instance_name: Optional[str] = None,
    ) -> dict[str, Any]:
        res = (
            self._db.table("conversations")
            .select("*")
            .eq("workspace_id", workspace_id)
            .eq("contact_id", contact_id)
            .eq("status", "open")
            .limit(1)
            .execute()
        )
        row = first_row(res)
        if row:
            return row
        now = utc_now_iso()
        payload = {
            "id": str(uuid.uuid4()),
            "workspace_id": workspace_id,
            "contact_id": contact_id,
            "connection_id": connection_id,
            "evolution_instance": instance_name,
            "status": "open",
            "unread_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        res = self._db.table("conversations").insert(payload).execute()
        return first_row(res) or payload

    def touch_conversation(self, conversation: dict[str, Any], *, at: datetime, inbound: bool = True) -> None:
        at_iso = at.isoformat()
        fields: dict[str, Any] = {"last_message_at": at_iso, "last_activity_at": at_iso, "updated_at": utc_now_iso()}
        if inbound:
            fields["unread_count"] = int(conversation.get("unread_count") or 0) + 1
        self._db.table("conversations").update(fields).eq("id", conversation.get("id")).execute()

    def find_by_external_id(self, workspace_id: str, external_id: str) -> Optional[dict[str, Any]]:
        res = (
            self._db.table("messages")
            .select("id, status")
            .eq("workspace_id", workspace_id)
            .eq("external_id", external_id)
            .limit(1)
            .execute()
        )
        return first_row(res) or None

    def insert_inbound(self, workspace_id: str, conversation_id: str, msg: InboundMessage) -> Optional[dict[str, Any]]:
        """Insert an inbound message; ``None`` when the external id was already recorded."""
        payload = {
            "id": str(uuid.uuid4()),
            "workspace_id": workspace_id,
            "conversation_id": conversation_id,
            "sender_type": "contact",
            "message_type": msg.message_type,
            "content": msg.content,
            "status": MessageStatus.DELIVERED.value,
            "external_id": msg.external_id,
            "file_url": msg.media_url,
            "file_name": msg.file_name,
            "created_at": (msg.timestamp or utc_now()).isoformat(),
            "metadata": {"push_name": msg.push_name, "remote_jid": msg.remote_jid},
        }
        try:
            res = self._db.table("messages").insert(payload).execute()
        except Exception as e:
            if is_unique_violation(e):
                return None
            raise
        return first_row(res) or payload

    def update_status_by_external_id(self, workspace_id: str, external_id: str, status: MessageStatus) -> int:
        fields: dict[str, Any] = {"status": status.value}
        if status == MessageStatus.DELIVERED:
            fields["delivered_at"] = utc_now_iso()
        elif status == MessageStatus.READ:
            fields["read_at"] = utc_now_iso()
        res = (
            self._db.table("messages")
            .update(fields)
            .eq("workspace_id", workspace_id)
            .eq("external_id", external_id)
            .execute()
        )
        return len(all_rows(res))

    def get(self, message_id: str) -> dict[str, Any]:
        res = self._db.table("messages").select("*").eq("id", message_id).limit(1).execute()
        row = first_row(res)
        if not row:
            raise NotFoundError("Mensagem não encontrada.", details={"message_id": message_id})
        return row

    def insert_outbound(
        self,
        *,
        workspace_id: str,
        conversation_id: str,
        content: str,
        message_type: str = "text",
        sender_id: Optional[str] = None,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> dict[str, Any]:
        payload = {
            "id": str(uuid.uuid4()),
            "workspace_id": workspace_id,
            "conversation_id": conversation_id,
            "sender_type": "agent",
            "sender_id": sender_id,
            "message_type": message_type,
            "content": content,
            "status": MessageStatus.SENDING.value,
            "file_url": file_url,
            "file_name": file_name,
            "created_at": utc_now_iso(),
        }
        res = self._db.table("messages").insert(payload).execute()
        return first_row(res) or payload

    def mark_status(self, message_id: str, status: MessageStatus, *, external_id: Optional[str] = None) -> None:
        fields: dict[str, Any] = {"status": status.value}
        if external_id:
            fields["external_id"] = external_id
        self._db.table("messages").update(fields).eq("id", message_id).execute()

    def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        res = self._db.table("conversations").select("*").eq("id", conversation_id).limit(1).execute()
        row = first_row(res)
        if not row:
            raise NotFoundError("Conversa não encontrada.", details={"conversation_id": conversation_id})
        return row

    def get_contact(self, contact_id: str) -> dict[str, Any]:
        res = self._db.table("contacts").select("*").eq("id", contact_id).limit(1).execute()
        row = first_row(res)
        if not row:
            raise NotFoundError("Contato não encontrado.", details={"contact_id": contact_id})
        return row
