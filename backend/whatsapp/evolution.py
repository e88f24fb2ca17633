from __future__ import annotations

import re
from typing import Any, Optional

import httpx

from .auth import EvolutionApiKeyAuth
from .errors import InvalidArgumentError
from .http import HttpClient, HttpClientConfig

PROVIDER_ID = "evolution"

WEBHOOK_EVENTS = (
    "MESSAGES_UPSERT",
    "MESSAGES_UPDATE",
    "CONNECTION_UPDATE",
    "QRCODE_UPDATED",
)

_INSTANCE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,80}$")


def validate_instance_name(instance_name: Any) -> str:
    name = str(instance_name or "").strip()
    if not _INSTANCE_NAME_RE.match(name):
        raise InvalidArgumentError(
            "Nome da instância inválido. Use letras, números, '_', '-' ou '.' (máx. 80).",
            details={"instance_name": name},
        )
    return name


def format_phone(phone: str) -> str:
    """Digits only, with the Brazilian country code added to bare local numbers."""
    number = "".join(filter(str.isdigit, str(phone or "")))
    if len(number) == 11 and number[0] != "5":
        number = "55" + number
    elif len(number) == 10:
        number = "55" + number
    return number


class EvolutionClient:
    """Evolution API v2 surface. Stateless; one per base URL and API key."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = HttpClient(
            config=HttpClientConfig(
                base_url=base_url,
                timeout_s=timeout_s,
                headers={"Content-Type": "application/json"},
            ),
            auth=EvolutionApiKeyAuth(api_key=api_key),
            provider=PROVIDER_ID,
            transport=transport,
        )

    @property
    def provider(self) -> str:
        return self._http.provider

    # ==================== INSTANCE MANAGEMENT ====================

    async def create_instance(
        self,
        instance_name: str,
        *,
        webhook_url: Optional[str] = None,
        webhook_headers: Optional[dict[str, str]] = None,
        sync_full_history: bool = False,
        token: Optional[str] = None,
    ) -> dict[str, Any]:
        name = validate_instance_name(instance_name)
        data: dict[str, Any] = {
            "instanceName": name,
            "integration": "WHATSAPP-BAILEYS",
            "qrcode": True,
            "rejectCall": False,
            "groupsIgnore": True,
            "alwaysOnline": False,
            "readMessages": False,
            "readStatus": False,
            "syncFullHistory": bool(sync_full_history),
        }
        if token:
            # per-instance apikey; Evolution generates one when absent
            data["token"] = token
        if webhook_url:
            data["webhook"] = self._webhook_payload(webhook_url, webhook_headers)
        return _as_dict(await self._http.request("POST", "/instance/create", json=data))

    async def fetch_instances(self) -> list[dict[str, Any]]:
        result = await self._http.request("GET", "/instance/fetchInstances")
        if isinstance(result, list):
            return [r for r in result if isinstance(r, dict)]
        return []

    async def connect(self, instance_name: str) -> dict[str, Any]:
        """Current QR / pairing code for the instance. Codes expire server-side."""
        return _as_dict(await self._http.request("GET", f"/instance/connect/{validate_instance_name(instance_name)}"))

    async def connection_state(self, instance_name: str) -> dict[str, Any]:
        return _as_dict(await self._http.request("GET", f"/instance/connectionState/{validate_instance_name(instance_name)}"))

    async def restart(self, instance_name: str) -> dict[str, Any]:
        return _as_dict(await self._http.request("PUT", f"/instance/restart/{validate_instance_name(instance_name)}"))

    async def logout(self, instance_name: str) -> dict[str, Any]:
        return _as_dict(await self._http.request("DELETE", f"/instance/logout/{validate_instance_name(instance_name)}"))

    async def delete(self, instance_name: str) -> dict[str, Any]:
        return _as_dict(await self._http.request("DELETE", f"/instance/delete/{validate_instance_name(instance_name)}"))

    async def find_profile(self, instance_name: str, phone: Optional[str] = None) -> dict[str, Any]:
        path = f"/chat/findProfile/{validate_instance_name(instance_name)}"
        if phone:
            return _as_dict(await self._http.request("POST", path, json={"number": format_phone(phone)}))
        return _as_dict(await self._http.request("GET", path))

    # ==================== MESSAGING ====================

    async def send_text(self, instance_name: str, phone: str, text: str) -> dict[str, Any]:
        data = {"number": format_phone(phone), "text": text}
        return _as_dict(await self._http.request("POST", f"/message/sendText/{validate_instance_name(instance_name)}", json=data))

    async def send_media(
        self,
        instance_name: str,
        phone: str,
        media_type: str,
        media: str,
        *,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> dict[str, Any]:
        data = {
            "number": format_phone(phone),
            "mediatype": media_type,
            "caption": caption or "",
            "fileName": file_name or "file",
            "media": media,
        }
        return _as_dict(await self._http.request("POST", f"/message/sendMedia/{validate_instance_name(instance_name)}", json=data))

    # ==================== WEBHOOK ====================

    async def set_webhook(
        self,
        instance_name: str,
        webhook_url: str,
        *,
        webhook_headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        data = {"webhook": self._webhook_payload(webhook_url, webhook_headers)}
        return _as_dict(await self._http.request("POST", f"/webhook/set/{validate_instance_name(instance_name)}", json=data))

    def _webhook_payload(self, webhook_url: str, webhook_headers: Optional[dict[str, str]]) -> dict[str, Any]:
        return {
            "enabled": True,
            "url": webhook_url,
            "byEvents": False,
            "base64": True,
            "headers": dict(webhook_headers or {}),
            "events": list(WEBHOOK_EVENTS),
        }


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {"items": value}
    return {}
