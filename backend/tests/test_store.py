from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest

from backend.whatsapp.domain import ConnectionStatus, HistoryRecovery, InboundMessage, MessageStatus
from backend.whatsapp.errors import InvalidArgumentError, NotFoundError
from backend.whatsapp.observability import Observability
from backend.whatsapp.store import ConnectionStore, MessageStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _store(db, default_limit: int = 1) -> ConnectionStore:
    return ConnectionStore(db, obs=Observability(logging.getLogger("test")), default_limit=default_limit)


def test_newer_observation_wins(db, seed_connection) -> None:
    seed_connection(status="qr", updated_at=T0.isoformat())
    store = _store(db)

    conn = store.upsert_status("loja1", ConnectionStatus.CONNECTED, observed_at=T0 + timedelta(seconds=5))
    assert conn.status == ConnectionStatus.CONNECTED

    # an older poll result arriving late must not overwrite it
    conn = store.upsert_status("loja1", ConnectionStatus.DISCONNECTED, observed_at=T0 + timedelta(seconds=2))
    assert conn.status == ConnectionStatus.CONNECTED
    assert db.one("connections", instance_name="loja1")["status"] == "connected"


def test_concurrent_writer_lost_race_rereads_row(db, seed_connection) -> None:
    seed_connection(status="qr", updated_at=T0.isoformat())
    store = _store(db)
    original_find = store.find_by_instance
    calls = {"n": 0}

    def find_then_race(instance_name):
        conn = original_find(instance_name)
        calls["n"] += 1
        if calls["n"] == 1:
            # another writer lands between the read and the conditional update
            row = db.one("connections", instance_name=instance_name)
            row["status"] = "connected"
            row["updated_at"] = (T0 + timedelta(seconds=10)).isoformat()
        return conn

    store.find_by_instance = find_then_race
    conn = store.upsert_status("loja1", ConnectionStatus.DISCONNECTED, observed_at=T0 + timedelta(seconds=3))
    assert conn.status == ConnectionStatus.CONNECTED


def test_connected_clears_qr_code_and_rejects_qr_afterwards(db, seed_connection, qr_code) -> None:
    seed_connection(status="qr", qr_code=qr_code, updated_at=T0.isoformat())
    store = _store(db)

    conn = store.upsert_status("loja1", ConnectionStatus.CONNECTED, phone_number="5521999998888", observed_at=T0 + timedelta(seconds=1))
    assert conn.qr_code is None
    assert conn.phone_number == "5521999998888"

    conn = store.upsert_status("loja1", ConnectionStatus.QR, qr_code=qr_code, observed_at=T0 + timedelta(seconds=2))
    assert conn.status == ConnectionStatus.CONNECTED
    assert db.one("connections", instance_name="loja1")["qr_code"] is None


def test_unknown_instance_raises_not_found(db) -> None:
    with pytest.raises(NotFoundError):
        _store(db).upsert_status("fantasma", ConnectionStatus.CONNECTED)


def test_insert_duplicate_instance_is_invalid_argument(db) -> None:
    store = _store(db)
    store.insert(workspace_id="ws-1", instance_name="loja1", history_recovery=HistoryRecovery.NONE)
    with pytest.raises(InvalidArgumentError):
        store.insert(workspace_id="ws-2", instance_name="loja1", history_recovery=HistoryRecovery.NONE)


def test_quota_uses_workspace_limit_or_default(db, seed_connection) -> None:
    seed_connection("a")
    seed_connection("b")
    seed_connection("c", workspace_id="ws-2")
    store = _store(db, default_limit=1)

    quota = store.quota("ws-1")
    assert (quota.used, quota.limit, quota.available) == (2, 1, False)

    db.seed("workspace_limits", workspace_id="ws-1", connection_limit=5)
    quota = store.quota("ws-1")
    assert (quota.used, quota.limit, quota.available) == (2, 5, True)


def test_quota_default_when_limits_table_missing(db) -> None:
    db.failures[("workspace_limits", "select")] = Exception(
        "Could not find the table 'public.workspace_limits' in the schema cache (PGRST205)"
    )
    assert _store(db, default_limit=3).quota("ws-1").limit == 3


def test_delete_removes_connection_secrets_and_channel(db, seed_connection) -> None:
    seed_connection(secret="s1")
    db.seed("connection_secrets", connection_id="conn-loja1", token="t", evolution_url="http://evo")
    _store(db).delete("conn-loja1")
    assert db.rows("connections") == []
    assert db.rows("channels") == []
    assert db.rows("connection_secrets") == []


def test_append_log_failure_is_swallowed(db, caplog) -> None:
    db.failures[("provider_logs", "insert")] = Exception("relation provider_logs does not exist")
    with caplog.at_level(logging.WARNING, logger="test"):
        _store(db).append_log("conn-1", event_type="x", message="y")
    assert "store.provider_log.failed" in caplog.text


def test_inbound_insert_is_deduplicated_by_external_id(db) -> None:
    messages = MessageStore(db)
    msg = InboundMessage(
        external_id="EXT-1",
        phone="5521999998888",
        remote_jid="5521999998888@s.whatsapp.net",
        from_me=False,
        content="Oi",
    )
    assert messages.insert_inbound("ws-1", "conv-1", msg) is not None
    assert messages.insert_inbound("ws-1", "conv-1", msg) is None
    assert len(db.rows("messages", external_id="EXT-1")) == 1


def test_ack_updates_status_and_timestamps(db) -> None:
    db.seed("messages", id="m1", workspace_id="ws-1", external_id="EXT-1", status="sent")
    messages = MessageStore(db)
    assert messages.update_status_by_external_id("ws-1", "EXT-1", MessageStatus.READ) == 1
    row = db.one("messages", id="m1")
    assert row["status"] == "read"
    assert row["read_at"]
    assert messages.update_status_by_external_id("ws-2", "EXT-1", MessageStatus.READ) == 0
