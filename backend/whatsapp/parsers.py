"""Normalization of Evolution webhook and REST payloads.

Evolution v2 is loose about shapes: the same field may arrive at the top
level, under ``data`` or wrapped in a single-key ``data`` container, and event
names arrive as either ``MESSAGES_UPSERT`` or ``messages.upsert``. Everything
here is pure; nothing touches the network or the database.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from .domain import InboundMessage, MessageStatus
from ..utils.phone_utils import extract_phone_from_jid

EVENT_QRCODE_UPDATED = "QRCODE_UPDATED"
EVENT_CONNECTION_UPDATE = "CONNECTION_UPDATE"
EVENT_MESSAGES_UPSERT = "MESSAGES_UPSERT"
EVENT_MESSAGES_UPDATE = "MESSAGES_UPDATE"

MESSAGE_EVENTS = frozenset({EVENT_MESSAGES_UPSERT, EVENT_MESSAGES_UPDATE})

_ACK_BY_NUMBER = {
    1: MessageStatus.SENT,
    2: MessageStatus.DELIVERED,
    3: MessageStatus.READ,
    4: MessageStatus.READ,
}
_ACK_BY_NAME = {
    "SERVER_ACK": MessageStatus.SENT,
    "DELIVERY_ACK": MessageStatus.DELIVERED,
    "READ": MessageStatus.READ,
    "PLAYED": MessageStatus.READ,
}

_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

_MEDIA_KINDS = {
    "imageMessage": ("image", "[Imagem]"),
    "videoMessage": ("video", "[Vídeo]"),
    "audioMessage": ("audio", "[Áudio]"),
    "documentMessage": ("document", "[Documento]"),
}

_PLACEHOLDERS = {
    "stickerMessage": "[Sticker]",
    "locationMessage": "[Localização]",
    "contactMessage": "[Contato]",
    "contactsArrayMessage": "[Contatos]",
}


def normalize_event(raw: Any) -> str:
    """``messages.upsert`` and ``MESSAGES_UPSERT`` both become ``MESSAGES_UPSERT``."""
    return str(raw or "").strip().upper().replace(".", "_")


def extract_instance(payload: dict[str, Any]) -> Optional[str]:
    for key in ("instance", "instanceName", "instance_name"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            nested = value.get("instanceName") or value.get("name")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


def unwrap_data(payload: dict[str, Any]) -> Any:
    cur: Any = payload.get("data")
    for _ in range(6):
        if isinstance(cur, dict) and len(cur.keys()) == 1 and "data" in cur:
            cur = cur.get("data")
            continue
        break
    return cur if cur is not None else {}


def extract_qrcode_value(obj: Any) -> Optional[str]:
    """First value that looks like a rendered QR (data URI or long base64 string)."""
    if not obj:
        return None
    if isinstance(obj, str):
        return obj if obj.startswith("data:image") or len(obj) > 100 else None
    if isinstance(obj, dict):
        for key in ("qrcode", "qr", "qr_code", "qrCode", "base64", "code"):
            val = obj.get(key)
            if val and isinstance(val, str) and (val.startswith("data:image") or len(val) > 100):
                return val
        for val in obj.values():
            result = extract_qrcode_value(val)
            if result:
                return result
    return None


def extract_pairing_code(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for key in ("pairingCode", "pairing_code"):
        val = obj.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    for key in ("qrcode", "data"):
        nested = obj.get(key)
        if isinstance(nested, dict):
            found = extract_pairing_code(nested)
            if found:
                return found
    return None


def extract_qr_event(payload: dict[str, Any]) -> dict[str, Any]:
    """``{code, pairingCode, count}`` as broadcast to live subscribers."""
    data = unwrap_data(payload)
    if not isinstance(data, dict):
        data = {}
    qrcode = data.get("qrcode")
    count = data.get("count")
    if count is None and isinstance(qrcode, dict):
        count = qrcode.get("count")
    return {
        "code": extract_qrcode_value(qrcode) or extract_qrcode_value(data),
        "pairingCode": extract_pairing_code(data),
        "count": count,
    }


def extract_state(payload: Any) -> Optional[str]:
    """Provider connection state from a webhook body or a ``connectionState`` response."""
    if not isinstance(payload, dict):
        return None
    candidates: list[Any] = []
    data = payload.get("data")
    if isinstance(data, dict):
        candidates.append(data.get("state"))
        inst = data.get("instance")
        if isinstance(inst, dict):
            candidates.append(inst.get("state"))
    inst = payload.get("instance")
    if isinstance(inst, dict):
        candidates.append(inst.get("state"))
    candidates.append(payload.get("state"))
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return None


def extract_connected_phone(payload: Any) -> Optional[str]:
    """Own number of a connected instance, from ``wuid`` / ``owner`` / ``ownerJid``."""
    if not isinstance(payload, dict):
        return None
    sources: list[dict[str, Any]] = [payload]
    for key in ("data", "instance"):
        nested = payload.get(key)
        if isinstance(nested, dict):
            sources.append(nested)
            inner = nested.get("instance")
            if isinstance(inner, dict):
                sources.append(inner)
    for src in sources:
        for key in ("wuid", "owner", "ownerJid"):
            value = src.get(key)
            if isinstance(value, str) and value.strip():
                phone = extract_phone_from_jid(value)
                if phone:
                    return phone
    return None


def _unwrap_content(content: Any) -> dict[str, Any]:
    cur = content
    for _ in range(8):
        if not isinstance(cur, dict):
            return {}
        for key in _WRAPPER_KEYS:
            wrapper = cur.get(key)
            if isinstance(wrapper, dict) and isinstance(wrapper.get("message"), dict):
                cur = wrapper.get("message")
                break
        else:
            return cur
    return cur if isinstance(cur, dict) else {}


def _text_of(content: dict[str, Any]) -> Optional[str]:
    if isinstance(content.get("conversation"), str):
        return content["conversation"]
    ext = content.get("extendedTextMessage")
    if isinstance(ext, dict) and isinstance(ext.get("text"), str):
        return ext["text"]
    br = content.get("buttonsResponseMessage")
    if isinstance(br, dict):
        return br.get("selectedDisplayText") or br.get("selectedButtonId")
    lr = content.get("listResponseMessage")
    if isinstance(lr, dict):
        ssr = lr.get("singleSelectReply") or {}
        return lr.get("title") or (ssr.get("selectedRowId") if isinstance(ssr, dict) else None)
    tbr = content.get("templateButtonReplyMessage")
    if isinstance(tbr, dict):
        return tbr.get("selectedDisplayText") or tbr.get("selectedId")
    rx = content.get("reactionMessage")
    if isinstance(rx, dict):
        return rx.get("text")
    return None


def _message_items(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, list):
        return [m for m in data if isinstance(m, dict)]
    if not isinstance(data, dict):
        return []
    if isinstance(data.get("messages"), list):
        return [m for m in data["messages"] if isinstance(m, dict)]
    if "key" in data or "message" in data:
        return [data]
    return []


def _timestamp(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_inbound_messages(payload: dict[str, Any]) -> list[InboundMessage]:
    """All message items of a ``MESSAGES_UPSERT`` body, in delivery order."""
    out: list[InboundMessage] = []
    for item in _message_items(unwrap_data(payload)):
        key = item.get("key") if isinstance(item.get("key"), dict) else {}
        remote_jid = str(key.get("remoteJid") or item.get("remoteJid") or "").strip()
        content = _unwrap_content(item.get("message") or {})

        msg_type = "text"
        text = _text_of(content)
        media_url = None
        file_name = None
        for media_key, (kind, placeholder) in _MEDIA_KINDS.items():
            media = content.get(media_key)
            if isinstance(media, dict):
                msg_type = kind
                media_url = media.get("url")
                file_name = media.get("fileName")
                text = media.get("caption") or (file_name if kind == "document" else None) or placeholder
                break
        if text is None:
            for placeholder_key, placeholder in _PLACEHOLDERS.items():
                if placeholder_key in content:
                    text = placeholder
                    break
        if not (text or "").strip():
            text = "[Mensagem]"

        external_id = key.get("id") or item.get("id")
        out.append(
            InboundMessage(
                external_id=str(external_id) if external_id else None,
                phone=extract_phone_from_jid(remote_jid),
                remote_jid=remote_jid,
                from_me=bool(key.get("fromMe", False)),
                content=str(text),
                message_type=msg_type,
                push_name=item.get("pushName"),
                timestamp=_timestamp(item.get("messageTimestamp")),
                media_url=media_url,
                file_name=file_name,
            )
        )
    return out


def parse_message_acks(payload: dict[str, Any]) -> list[tuple[str, MessageStatus]]:
    """``(external_id, status)`` pairs of a ``MESSAGES_UPDATE`` body; unknown acks are dropped."""
    data = unwrap_data(payload)
    items = data if isinstance(data, list) else [data]
    out: list[tuple[str, MessageStatus]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        key = item.get("key") if isinstance(item.get("key"), dict) else {}
        external_id = key.get("id") or item.get("keyId") or item.get("messageId") or item.get("id")
        if not external_id:
            continue
        status = _ack_status(item)
        if status is not None:
            out.append((str(external_id), status))
    return out


def _ack_status(item: dict[str, Any]) -> Optional[MessageStatus]:
    update = item.get("update") if isinstance(item.get("update"), dict) else {}
    for raw in (item.get("ack"), item.get("status"), update.get("status")):
        if raw is None:
            continue
        if isinstance(raw, bool):
            continue
        if isinstance(raw, int):
            found = _ACK_BY_NUMBER.get(raw)
        else:
            s = str(raw).strip().upper()
            found = _ACK_BY_NUMBER.get(int(s)) if s.isdigit() else _ACK_BY_NAME.get(s)
        if found is not None:
            return found
    return None
