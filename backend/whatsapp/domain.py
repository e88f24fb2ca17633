from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ConnectionStatus(str, Enum):
    CREATING = "creating"
    QR = "qr"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class HistoryRecovery(str, Enum):
    NONE = "none"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


MESSAGE_TYPES = ("text", "image", "video", "audio", "document")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def map_provider_state(state: Any) -> ConnectionStatus:
    """Evolution ``state`` string to local status: open, connecting, anything else is disconnected."""
    s = str(state or "").strip().lower()
    if s == "open":
        return ConnectionStatus.CONNECTED
    if s == "connecting":
        return ConnectionStatus.CONNECTING
    return ConnectionStatus.DISCONNECTED


def can_transition(current: Optional[ConnectionStatus], new: ConnectionStatus) -> bool:
    if current is None or current == new:
        return True
    if new == ConnectionStatus.CREATING:
        return False
    if current == ConnectionStatus.CONNECTED and new == ConnectionStatus.QR:
        return False
    return True


def _status(value: Any) -> ConnectionStatus:
    try:
        return ConnectionStatus(str(value or "").strip().lower())
    except ValueError:
        return ConnectionStatus.ERROR


def _history(value: Any) -> HistoryRecovery:
    try:
        return HistoryRecovery(str(value or "none").strip().lower())
    except ValueError:
        return HistoryRecovery.NONE


@dataclass
class Connection:
    id: str
    workspace_id: str
    instance_name: str
    status: ConnectionStatus
    history_recovery: HistoryRecovery = HistoryRecovery.NONE
    qr_code: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Connection":
        metadata = row.get("metadata")
        return cls(
            id=str(row.get("id")),
            workspace_id=str(row.get("workspace_id") or ""),
            instance_name=str(row.get("instance_name") or ""),
            status=_status(row.get("status")),
            history_recovery=_history(row.get("history_recovery")),
            qr_code=row.get("qr_code") or None,
            phone_number=row.get("phone_number") or None,
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            last_activity_at=parse_timestamp(row.get("last_activity_at")),
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspaceId": self.workspace_id,
            "instanceName": self.instance_name,
            "status": self.status.value,
            "historyRecovery": self.history_recovery.value,
            # stale codes are never shown outside the pairing phase
            "qrCode": self.qr_code if self.status in (ConnectionStatus.CREATING, ConnectionStatus.QR) else None,
            "phoneNumber": self.phone_number,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "lastActivityAt": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


@dataclass(frozen=True)
class Quota:
    used: int
    limit: int

    @property
    def available(self) -> bool:
        return self.used < self.limit

    def to_dict(self) -> dict[str, Any]:
        return {"used": self.used, "limit": self.limit, "available": self.available}


@dataclass
class Channel:
    id: str
    workspace_id: str
    instance: str
    webhook_secret: str
    previous_webhook_secret: Optional[str] = None
    previous_secret_expires_at: Optional[datetime] = None
    status: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Channel":
        return cls(
            id=str(row.get("id")),
            workspace_id=str(row.get("workspace_id") or ""),
            instance=str(row.get("instance") or ""),
            webhook_secret=str(row.get("webhook_secret") or ""),
            previous_webhook_secret=row.get("previous_webhook_secret") or None,
            previous_secret_expires_at=parse_timestamp(row.get("previous_secret_expires_at")),
            status=row.get("status"),
        )


@dataclass(frozen=True)
class InboundMessage:
    external_id: Optional[str]
    phone: str
    remote_jid: str
    from_me: bool
    content: str
    message_type: str = "text"
    push_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    media_url: Optional[str] = None
    file_name: Optional[str] = None

    @property
    def is_group(self) -> bool:
        jid = self.remote_jid or ""
        return jid.endswith("@g.us") or jid.endswith("@broadcast")


@dataclass(frozen=True)
class OutboundMessage:
    workspace_id: str
    conversation_id: str
    message_id: str
    phone: str
    content: str
    instance_name: str
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None

    def automation_payload(self) -> dict[str, Any]:
        return {
            "event": "outbound_message",
            "workspace_id": self.workspace_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "instance": self.instance_name,
            "phone": self.phone,
            "content": self.content,
            "type": self.message_type,
            "file_url": self.file_url,
            "file_name": self.file_name,
        }


@dataclass
class DeliveryResult:
    success: bool
    path: Optional[str]
    attempted: list[str] = field(default_factory=list)
    external_id: Optional[str] = None
    response: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "path": self.path,
            "attempted": list(self.attempted),
            "externalId": self.external_id,
        }
