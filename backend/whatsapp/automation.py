from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..utils.db_helpers import first_row, is_missing_table_or_schema_error
from .auth import automation_auth
from .domain import utc_now_iso
from .errors import InvalidArgumentError, ProviderRequestError
from .http import HttpClient, HttpClientConfig

PROVIDER_ID = "automation"


@dataclass(frozen=True)
class AutomationTarget:
    url: str
    secret: Optional[str] = None
    source: str = "workspace"

    def masked(self) -> dict[str, Any]:
        return {"url": self.url, "has_secret": bool(self.secret), "source": self.source}


class AutomationSettingsStore:
    """Per-workspace automation webhook (``workspace_webhook_settings``) with an optional global fallback."""

    def __init__(self, client: Any, *, fallback_url: str = "", fallback_secret: str = ""):
        self._db = client
        self._fallback_url = (fallback_url or "").strip()
        self._fallback_secret = (fallback_secret or "").strip()

    def get(self, workspace_id: str) -> Optional[AutomationTarget]:
        try:
            res = (
                self._db.table("workspace_webhook_settings")
                .select("webhook_url, webhook_secret")
                .eq("workspace_id", workspace_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            if is_missing_table_or_schema_error(e, "workspace_webhook_settings"):
                return None
            raise
        row = first_row(res)
        url = str(row.get("webhook_url") or "").strip()
        if not url:
            return None
        return AutomationTarget(url=url, secret=(row.get("webhook_secret") or None), source="workspace")

    def resolve(self, workspace_id: str, *, allow_global: bool = False) -> Optional[AutomationTarget]:
        target = self.get(workspace_id)
        if target is not None:
            return target
        if allow_global and self._fallback_url:
            return AutomationTarget(url=self._fallback_url, secret=self._fallback_secret or None, source="global")
        return None

    def save(self, workspace_id: str, *, url: str, secret: Optional[str] = None) -> AutomationTarget:
        clean = (url or "").strip()
        if not (clean.startswith("http://") or clean.startswith("https://")):
            raise InvalidArgumentError("URL do webhook de automação inválida.", details={"url": clean})
        now = utc_now_iso()
        payload = {
            "workspace_id": workspace_id,
            "webhook_url": clean,
            "webhook_secret": (secret or "").strip(),
            "updated_at": now,
        }
        existing = first_row(
            self._db.table("workspace_webhook_settings").select("workspace_id").eq("workspace_id", workspace_id).limit(1).execute()
        )
        if existing:
            self._db.table("workspace_webhook_settings").update(payload).eq("workspace_id", workspace_id).execute()
        else:
            self._db.table("workspace_webhook_settings").insert({**payload, "created_at": now}).execute()
        return AutomationTarget(url=clean, secret=payload["webhook_secret"] or None, source="workspace")

    def delete(self, workspace_id: str) -> None:
        self._db.table("workspace_webhook_settings").delete().eq("workspace_id", workspace_id).execute()


class AutomationWebhookClient:
    """POSTs JSON to an automation flow (N8N or similar). Success unless non-2xx or ``success: false``."""

    def __init__(self, *, timeout_s: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._timeout_s = timeout_s
        self._transport = transport

    async def post(self, target: AutomationTarget, payload: dict[str, Any]) -> Any:
        client = HttpClient(
            config=HttpClientConfig(
                base_url=target.url,
                timeout_s=self._timeout_s,
                headers={"Content-Type": "application/json"},
            ),
            auth=automation_auth(target.secret),
            provider=PROVIDER_ID,
            transport=self._transport,
        )
        result = await client.request("POST", "", json=payload)
        if isinstance(result, dict) and result.get("success") is False:
            raise ProviderRequestError(
                str(result.get("error") or "Automação recusou a mensagem."),
                provider=PROVIDER_ID,
                details={"response": result},
            )
        return result
