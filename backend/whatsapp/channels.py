"""Per-instance webhook secrets.

Each channel row maps an Evolution instance to the shared secret the provider
sends back in the webhook header. Rotation keeps the previous secret valid
(dual-valid window) until either a webhook arrives signed with the new secret
or the grace period elapses, whichever happens first.
"""

from __future__ import annotations

import hmac
import secrets
import uuid
from datetime import timedelta
from typing import Any, Optional

from ..utils.db_helpers import first_row
from .domain import Channel, utc_now, utc_now_iso
from .errors import NotFoundError
from .observability import LogContext, Observability


def new_secret() -> str:
    return secrets.token_urlsafe(32)


def _matches(expected: Optional[str], given: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


class ChannelSecrets:
    def __init__(self, client: Any, *, obs: Observability, grace_s: float = 86400.0):
        self._db = client
        self._obs = obs
        self._grace = timedelta(seconds=max(0.0, float(grace_s)))

    def get_by_instance(self, instance: str) -> Optional[Channel]:
        res = self._db.table("channels").select("*").eq("instance", instance).limit(1).execute()
        row = first_row(res)
        return Channel.from_row(row) if row else None

    def issue(self, workspace_id: str, instance: str) -> Channel:
        secret = new_secret()
        now = utc_now_iso()
        existing = self.get_by_instance(instance)
        if existing:
            fields = {
                "webhook_secret": secret,
                "previous_webhook_secret": None,
                "previous_secret_expires_at": None,
                "last_state_at": now,
            }
            res = self._db.table("channels").update(fields).eq("id", existing.id).execute()
            row = first_row(res) or {**_channel_row(existing), **fields}
        else:
            payload = {
                "id": str(uuid.uuid4()),
                "workspace_id": workspace_id,
                "name": instance,
                "instance": instance,
                "status": "disconnected",
                "webhook_secret": secret,
                "last_state_at": now,
            }
            res = self._db.table("channels").insert(payload).execute()
            row = first_row(res) or payload
        self._obs.info("channel.secret.issued", ctx=LogContext(workspace_id=workspace_id, instance_name=instance))
        return Channel.from_row(row)

    def authenticate(self, secret: Optional[str]) -> Optional[Channel]:
        """Channel owning ``secret`` or ``None``. A hit on the new secret confirms a pending rotation."""
        given = (secret or "").strip()
        if not given:
            return None

        res = self._db.table("channels").select("*").eq("webhook_secret", given).limit(1).execute()
        row = first_row(res)
        if row:
            channel = Channel.from_row(row)
            if not _matches(channel.webhook_secret, given):
                return None
            if channel.previous_webhook_secret:
                self.confirm_rotation(channel.instance)
            return channel

        res = self._db.table("channels").select("*").eq("previous_webhook_secret", given).limit(1).execute()
        row = first_row(res)
        if not row:
            return None
        channel = Channel.from_row(row)
        if not _matches(channel.previous_webhook_secret, given):
            return None
        expires_at = channel.previous_secret_expires_at
        if expires_at is not None and expires_at <= utc_now():
            self._obs.info("channel.secret.previous_expired", ctx=LogContext(instance_name=channel.instance))
            return None
        return channel

    def rotate(self, instance: str) -> Channel:
        channel = self.get_by_instance(instance)
        if channel is None:
            raise NotFoundError("Canal não encontrado para a instância.", details={"instance": instance})
        fields = {
            "webhook_secret": new_secret(),
            "previous_webhook_secret": channel.webhook_secret,
            "previous_secret_expires_at": (utc_now() + self._grace).isoformat(),
        }
        res = self._db.table("channels").update(fields).eq("id", channel.id).execute()
        self._obs.info(
            "channel.secret.rotated",
            ctx=LogContext(workspace_id=channel.workspace_id, instance_name=instance),
            grace_s=int(self._grace.total_seconds()),
        )
        return Channel.from_row(first_row(res) or {**_channel_row(channel), **fields})

    def confirm_rotation(self, instance: str) -> None:
        self._db.table("channels").update(
            {"previous_webhook_secret": None, "previous_secret_expires_at": None}
        ).eq("instance", instance).execute()
        self._obs.info("channel.secret.rotation_confirmed", ctx=LogContext(instance_name=instance))

    def cancel_rotation(self, instance: str) -> None:
        """Restore the previous secret when the provider never learned the new one."""
        channel = self.get_by_instance(instance)
        if channel is None or not channel.previous_webhook_secret:
            return
        self._db.table("channels").update(
            {
                "webhook_secret": channel.previous_webhook_secret,
                "previous_webhook_secret": None,
                "previous_secret_expires_at": None,
            }
        ).eq("id", channel.id).execute()
        self._obs.warning("channel.secret.rotation_cancelled", ctx=LogContext(instance_name=instance))

    def revoke(self, instance: str) -> None:
        self._db.table("channels").delete().eq("instance", instance).execute()

    def update_status(self, channel: Channel, status: str) -> None:
        self._db.table("channels").update({"status": status, "last_state_at": utc_now_iso()}).eq("id", channel.id).execute()


def _channel_row(channel: Channel) -> dict[str, Any]:
    return {
        "id": channel.id,
        "workspace_id": channel.workspace_id,
        "instance": channel.instance,
        "webhook_secret": channel.webhook_secret,
        "previous_webhook_secret": channel.previous_webhook_secret,
        "previous_secret_expires_at": channel.previous_secret_expires_at.isoformat() if channel.previous_secret_expires_at else None,
        "status": channel.status,
    }
