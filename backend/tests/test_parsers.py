from __future__ import annotations

from backend.utils.phone_utils import extract_phone_from_jid, normalize_phone_number
from backend.whatsapp.domain import (
    Connection,
    ConnectionStatus,
    MessageStatus,
    can_transition,
    map_provider_state,
)
from backend.whatsapp.parsers import (
    extract_connected_phone,
    extract_instance,
    extract_qr_event,
    extract_state,
    normalize_event,
    parse_inbound_messages,
    parse_message_acks,
)

QR = "data:image/png;base64," + "A" * 120


def test_normalize_event_accepts_dotted_and_upper() -> None:
    assert normalize_event("messages.upsert") == "MESSAGES_UPSERT"
    assert normalize_event("CONNECTION_UPDATE") == "CONNECTION_UPDATE"
    assert normalize_event(None) == ""


def test_extract_instance_from_string_or_object() -> None:
    assert extract_instance({"instance": "loja"}) == "loja"
    assert extract_instance({"instance": {"instanceName": "loja2"}}) == "loja2"
    assert extract_instance({}) is None


def test_map_provider_state() -> None:
    assert map_provider_state("open") == ConnectionStatus.CONNECTED
    assert map_provider_state("CONNECTING") == ConnectionStatus.CONNECTING
    assert map_provider_state("close") == ConnectionStatus.DISCONNECTED
    assert map_provider_state("refused") == ConnectionStatus.DISCONNECTED
    assert map_provider_state(None) == ConnectionStatus.DISCONNECTED


def test_transitions() -> None:
    assert can_transition(ConnectionStatus.CREATING, ConnectionStatus.QR)
    assert can_transition(ConnectionStatus.QR, ConnectionStatus.CONNECTED)
    assert can_transition(ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED)
    assert can_transition(ConnectionStatus.DISCONNECTED, ConnectionStatus.QR)
    assert not can_transition(ConnectionStatus.QR, ConnectionStatus.CREATING)
    assert not can_transition(ConnectionStatus.CONNECTED, ConnectionStatus.QR)


def test_qr_is_only_exposed_while_pairing() -> None:
    row = {"id": "c1", "workspace_id": "ws", "instance_name": "loja", "status": "qr", "qr_code": QR}
    assert Connection.from_row(row).to_dict()["qrCode"] == QR
    row["status"] = "connected"
    assert Connection.from_row(row).to_dict()["qrCode"] is None


def test_extract_qr_event_nested_shapes() -> None:
    payload = {"event": "qrcode.updated", "data": {"qrcode": {"base64": QR, "pairingCode": "ABCD-1234", "count": 2}}}
    assert extract_qr_event(payload) == {"code": QR, "pairingCode": "ABCD-1234", "count": 2}


def test_extract_qr_event_ignores_short_values() -> None:
    payload = {"data": {"qrcode": {"code": "2@short"}}}
    assert extract_qr_event(payload)["code"] is None


def test_extract_state_from_webhook_and_rest_shapes() -> None:
    assert extract_state({"data": {"state": "OPEN"}}) == "open"
    assert extract_state({"instance": {"instanceName": "loja", "state": "connecting"}}) == "connecting"
    assert extract_state({"data": {"data": {}}}) is None


def test_extract_connected_phone_strips_device_suffix() -> None:
    payload = {"data": {"state": "open", "wuid": "5521999998888:12@s.whatsapp.net"}}
    assert extract_connected_phone(payload) == "5521999998888"
    assert extract_connected_phone({"ownerJid": "5511988887777@s.whatsapp.net"}) == "5511988887777"


def test_parse_inbound_text_media_and_wrapped() -> None:
    payload = {
        "data": {
            "messages": [
                {
                    "key": {"id": "M1", "remoteJid": "5521999998888@s.whatsapp.net", "fromMe": False},
                    "pushName": "Ana",
                    "message": {"conversation": "Oi"},
                    "messageTimestamp": 1767225600,
                },
                {
                    "key": {"id": "M2", "remoteJid": "5521999998888@s.whatsapp.net"},
                    "message": {"imageMessage": {"url": "https://cdn.test/a.jpg"}},
                },
                {
                    "key": {"id": "M3", "remoteJid": "5521999998888@s.whatsapp.net"},
                    "message": {"ephemeralMessage": {"message": {"extendedTextMessage": {"text": "sumindo"}}}},
                },
                {
                    "key": {"id": "M4", "remoteJid": "120363@g.us"},
                    "message": {},
                },
            ]
        }
    }
    msgs = parse_inbound_messages(payload)
    assert [m.external_id for m in msgs] == ["M1", "M2", "M3", "M4"]
    assert msgs[0].content == "Oi"
    assert msgs[0].push_name == "Ana"
    assert msgs[0].timestamp is not None
    assert (msgs[1].message_type, msgs[1].content, msgs[1].media_url) == ("image", "[Imagem]", "https://cdn.test/a.jpg")
    assert msgs[2].content == "sumindo"
    assert msgs[3].is_group is True
    assert msgs[3].content == "[Mensagem]"


def test_parse_message_acks() -> None:
    payload = {
        "data": [
            {"key": {"id": "A"}, "update": {"status": 3}},
            {"keyId": "B", "status": "DELIVERY_ACK"},
            {"key": {"id": "C"}, "status": "ERROR"},
            {"status": 2},
        ]
    }
    assert parse_message_acks(payload) == [("A", MessageStatus.READ), ("B", MessageStatus.DELIVERED)]


def test_phone_helpers() -> None:
    assert normalize_phone_number("+55 (21) 99999-8888") == "5521999998888"
    assert normalize_phone_number("21999998888") == "5521999998888"
    assert normalize_phone_number("") == ""
    assert extract_phone_from_jid("5521999998888:3@s.whatsapp.net") == "5521999998888"
