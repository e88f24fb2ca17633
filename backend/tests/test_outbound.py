from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from backend.whatsapp.domain import OutboundMessage
from backend.whatsapp.errors import OutboundDeliveryError
from backend.whatsapp.outbound import PATH_AUTOMATION, PATH_PROVIDER


def _message(db, message_type: str = "text", file_url: Optional[str] = None) -> OutboundMessage:
    db.seed("messages", id="m1", workspace_id="ws-1", conversation_id="conv-1", status="sending")
    return OutboundMessage(
        workspace_id="ws-1",
        conversation_id="conv-1",
        message_id="m1",
        phone="21999998888",
        content="Bom dia!",
        instance_name="loja1",
        message_type=message_type,
        file_url=file_url,
    )


def _automation(db) -> None:
    db.seed("workspace_webhook_settings", workspace_id="ws-1", webhook_url="https://hooks.test/outbound", webhook_secret="")


def test_automation_path_is_tried_first(container, db, automation_remote, evolution_remote) -> None:
    _automation(db)
    automation_remote.on("POST", "/outbound", 200, {"success": True, "key": {"id": "WA-1"}})

    result = asyncio.run(container.outbound.send(_message(db)))

    assert (result.path, result.attempted, result.external_id) == (PATH_AUTOMATION, [PATH_AUTOMATION], "WA-1")
    assert evolution_remote.requests == []
    payload = automation_remote.json_of(automation_remote.requests[0])
    assert payload["message_id"] == "m1"
    assert "authorization" not in automation_remote.requests[0].headers
    assert db.one("messages", id="m1")["status"] == "sent"


def test_automation_error_falls_back_to_provider(container, db, automation_remote, evolution_remote) -> None:
    _automation(db)
    automation_remote.on("POST", "/outbound", 500, {"error": "n8n fora"})
    evolution_remote.on("POST", "/message/sendText/loja1", 201, {"key": {"id": "WA-2"}, "status": "PENDING"})

    result = asyncio.run(container.outbound.send(_message(db)))

    assert result.path == PATH_PROVIDER
    assert result.attempted == [PATH_AUTOMATION, PATH_PROVIDER]
    body = evolution_remote.json_of(evolution_remote.calls("POST", "/message/sendText/loja1")[0])
    assert body == {"number": "5521999998888", "text": "Bom dia!"}
    row = db.one("messages", id="m1")
    assert (row["status"], row["external_id"]) == ("sent", "WA-2")


def test_automation_refusal_falls_back_to_provider(container, db, automation_remote, evolution_remote) -> None:
    _automation(db)
    automation_remote.on("POST", "/outbound", 200, {"success": False, "error": "sem fluxo"})
    evolution_remote.on("POST", "/message/sendText/loja1", 201, {"key": {"id": "WA-3"}})

    result = asyncio.run(container.outbound.send(_message(db)))
    assert result.path == PATH_PROVIDER


def test_no_automation_goes_straight_to_provider(container, db, automation_remote, evolution_remote) -> None:
    evolution_remote.on("POST", "/message/sendText/loja1", 201, {"key": {"id": "WA-4"}})

    result = asyncio.run(container.outbound.send(_message(db)))

    assert result.attempted == [PATH_PROVIDER]
    assert automation_remote.requests == []


def test_global_automation_target_is_not_used_for_outbound(db, settings, evolution_remote, automation_remote) -> None:
    from dataclasses import replace

    from backend.whatsapp.container import WhatsAppContainer

    with_global = WhatsAppContainer.build(
        client=db,
        settings=replace(settings, automation_webhook_url="https://hooks.test/global"),
        evolution_transport=evolution_remote.transport,
        automation_transport=automation_remote.transport,
    )
    evolution_remote.on("POST", "/message/sendText/loja1", 201, {"key": {"id": "WA-5"}})

    result = asyncio.run(with_global.outbound.send(_message(db)))
    assert result.attempted == [PATH_PROVIDER]


def test_media_message_uses_send_media(container, db, evolution_remote) -> None:
    evolution_remote.on("POST", "/message/sendMedia/loja1", 201, {"key": {"id": "WA-6"}})

    asyncio.run(container.outbound.send(_message(db, "image", "https://cdn.test/foto.jpg")))

    body = evolution_remote.json_of(evolution_remote.calls("POST", "/message/sendMedia/loja1")[0])
    assert body["mediatype"] == "image"
    assert body["media"] == "https://cdn.test/foto.jpg"
    assert body["caption"] == "Bom dia!"


def test_both_paths_failing_marks_message_failed(container, db, automation_remote, evolution_remote) -> None:
    _automation(db)
    automation_remote.on("POST", "/outbound", 502, {})
    evolution_remote.fail("POST", "/message/sendText/loja1")

    with pytest.raises(OutboundDeliveryError) as exc:
        asyncio.run(container.outbound.send(_message(db)))

    assert exc.value.attempted == [PATH_AUTOMATION, PATH_PROVIDER]
    assert exc.value.to_response()["attempted"] == [PATH_AUTOMATION, PATH_PROVIDER]
    assert db.one("messages", id="m1")["status"] == "failed"


def test_settings_outage_still_ends_sent_via_provider(container, db, automation_remote, evolution_remote) -> None:
    db.failures[("workspace_webhook_settings", "select")] = Exception("connection reset by peer")
    evolution_remote.on("POST", "/message/sendText/loja1", 201, {"key": {"id": "WA-7"}})

    result = asyncio.run(container.outbound.send(_message(db)))

    assert (result.path, result.attempted) == (PATH_PROVIDER, [PATH_PROVIDER])
    assert automation_remote.requests == []
    row = db.one("messages", id="m1")
    assert (row["status"], row["external_id"]) == ("sent", "WA-7")


def test_settings_outage_and_provider_failure_end_failed(container, db, evolution_remote) -> None:
    db.failures[("workspace_webhook_settings", "select")] = Exception("connection reset by peer")
    evolution_remote.fail("POST", "/message/sendText/loja1")

    with pytest.raises(OutboundDeliveryError) as exc:
        asyncio.run(container.outbound.send(_message(db)))

    assert exc.value.attempted == [PATH_PROVIDER]
    assert db.one("messages", id="m1")["status"] == "failed"
