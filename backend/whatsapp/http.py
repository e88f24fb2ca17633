from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .auth import AuthStrategy, NoAuth
from .errors import (
    InvalidArgumentError,
    NotFoundError,
    ProviderRequestError,
    ProviderUnavailableError,
    QuotaExceededError,
)

_QUOTA_MARKERS = ("limit", "quota", "plan", "limite")


@dataclass(frozen=True)
class HttpClientConfig:
    base_url: str
    timeout_s: float = 30.0
    headers: Optional[dict[str, str]] = None


class HttpClient:
    """Single request path for a remote collaborator.

    Auth headers are injected on every call and every non-2xx response is
    mapped to a typed ``WhatsAppError``; callers never see raw ``httpx``
    exceptions.
    """

    def __init__(
        self,
        *,
        config: HttpClientConfig,
        auth: Optional[AuthStrategy] = None,
        provider: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._auth = auth or NoAuth()
        self._provider = provider
        self._transport = transport

    @property
    def provider(self) -> str:
        return self._provider

    async def request(self, method: str, path: str, *, json: Optional[dict[str, Any]] = None) -> Any:
        base = (self._config.base_url or "").rstrip("/")
        if not base:
            raise ProviderRequestError("Base URL não configurada.", provider=self._provider, transient=False)
        url = f"{base}{path}"
        base_headers = dict(self._config.headers or {})
        auth_headers = await self._auth.get_headers()
        headers = {**base_headers, **auth_headers}

        try:
            async with httpx.AsyncClient(timeout=self._config.timeout_s, transport=self._transport) as client:
                resp = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                "Falha de comunicação com provedor.",
                provider=self._provider,
                details={"error": str(e), "method": method.upper(), "path": path},
            )

        if resp.status_code >= 400:
            raise _map_error_response(resp, provider=self._provider, method=method, path=path)

        return _parse_body(resp)


def _map_error_response(resp: httpx.Response, *, provider: str, method: str, path: str) -> Exception:
    status = resp.status_code
    body = _safe_text(resp)
    details = {"body": body, "method": str(method or "").upper(), "path": path}

    if status >= 500:
        return ProviderUnavailableError(
            "Provedor indisponível.",
            provider=provider,
            status_code=status,
            details=details,
        )
    if status == 404:
        return NotFoundError("Instância não encontrada no provedor.", details={"provider": provider, **details})
    if status in (402, 429) or (status == 403 and any(m in body.lower() for m in _QUOTA_MARKERS)):
        return QuotaExceededError("Limite do plano do provedor atingido.", details={"provider": provider, **details})
    if status in (400, 422):
        return InvalidArgumentError(_error_message(resp) or "Requisição rejeitada pelo provedor.", details={"provider": provider, **details})
    return ProviderRequestError(
        "Erro retornado pelo provedor.",
        provider=provider,
        status_code=status,
        transient=False,
        details=details,
    )


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError:
        return {"raw_text": _safe_text(resp)}


def _error_message(resp: httpx.Response) -> Optional[str]:
    try:
        payload = resp.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    response = payload.get("response")
    if isinstance(response, dict):
        message = response.get("message")
        if isinstance(message, list) and message:
            return str(message[0])
        if isinstance(message, str) and message.strip():
            return message
    for key in ("message", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _safe_text(resp: httpx.Response, limit: int = 4000) -> str:
    try:
        return (resp.text or "")[:limit]
    except Exception:
        return ""
