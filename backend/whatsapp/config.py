from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from typing import Protocol

    class YAMLValidationError(Exception):
        pass

    class _YamlDoc(Protocol):
        data: Any

    def load_yaml(_text: str) -> _YamlDoc:
        raise NotImplementedError
else:
    from strictyaml import YAMLValidationError, load as load_yaml

from .errors import ConfigError


@dataclass(frozen=True)
class ReconcilerPolicy:
    poll_interval_s: float = 5.0
    qr_fallback_timeout_s: float = 3.0
    qr_fallback_interval_s: float = 20.0


@dataclass(frozen=True)
class WhatsAppSettings:
    evolution_base_url: str = ""
    evolution_api_key: str = ""
    request_timeout_s: float = 30.0
    public_base_url: str = ""
    webhook_secret_header: str = "x-evo-secret"
    default_connection_limit: int = 1
    secret_rotation_grace_s: float = 86400.0
    automation_webhook_url: str = ""
    automation_webhook_token: str = ""
    forward_inbound_events: bool = True
    reconciler: ReconcilerPolicy = field(default_factory=ReconcilerPolicy)

    def webhook_url(self) -> str:
        base = (self.public_base_url or "").rstrip("/")
        if not base:
            return ""
        return f"{base}/api/webhooks/evolution"


def load_whatsapp_settings() -> WhatsAppSettings:
    inline = (os.getenv("WHATSAPP_CONFIG_INLINE") or "").strip()
    path = (os.getenv("WHATSAPP_CONFIG") or "").strip()

    if inline:
        overrides = _parse_text(inline)
    elif path:
        overrides = _parse_file(path)
    else:
        overrides = {}

    return _build_settings(overrides)


def _first_env(*names: str) -> str:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return ""


def _pick(section: dict[str, Any], key: str, *env_names: str) -> Any:
    """File value when present (even falsy), else the first non-empty env var."""
    value = section.get(key)
    if value is not None and str(value).strip() != "":
        return value
    return _first_env(*env_names)


def _build_settings(overrides: dict[str, Any]) -> WhatsAppSettings:
    evolution = overrides.get("evolution") or {}
    automation = overrides.get("automation") or {}
    reconciler = overrides.get("reconciler") or {}
    webhooks = overrides.get("webhooks") or {}
    for name, section in (("evolution", evolution), ("automation", automation), ("reconciler", reconciler), ("webhooks", webhooks)):
        if not isinstance(section, dict):
            raise ConfigError("Seção de configuração deve ser um mapa.", details={"section": name})

    base_url = str(_pick(evolution, "base_url", "EVOLUTION_API_URL", "EVOLUTION_API_BASE_URL", "EVOLUTION_URL"))
    api_key = str(_pick(evolution, "api_key", "EVOLUTION_API_KEY", "EVOLUTION_APIKEY", "EVOLUTION_ADMIN_API_KEY"))

    policy = ReconcilerPolicy(
        poll_interval_s=_as_float(_pick(reconciler, "poll_interval_s", "RECONCILER_POLL_INTERVAL_S"), 5.0, "poll_interval_s"),
        qr_fallback_timeout_s=_as_float(
            _pick(reconciler, "qr_fallback_timeout_s", "RECONCILER_QR_FALLBACK_TIMEOUT_S"), 3.0, "qr_fallback_timeout_s"
        ),
        qr_fallback_interval_s=_as_float(
            _pick(reconciler, "qr_fallback_interval_s", "RECONCILER_QR_FALLBACK_INTERVAL_S"), 20.0, "qr_fallback_interval_s"
        ),
    )

    return WhatsAppSettings(
        evolution_base_url=base_url.strip().rstrip("/"),
        evolution_api_key=api_key.strip(),
        request_timeout_s=_as_float(_pick(evolution, "timeout_s", "EVOLUTION_TIMEOUT_S"), 30.0, "timeout_s"),
        public_base_url=str(_pick(webhooks, "public_base_url", "PUBLIC_BACKEND_URL", "PUBLIC_BASE_URL", "WEBHOOK_BASE_URL")).strip(),
        webhook_secret_header=str(_pick(webhooks, "secret_header", "EVOLUTION_WEBHOOK_SECRET_HEADER") or "x-evo-secret").strip().lower(),
        default_connection_limit=int(
            _as_float(_pick(webhooks, "default_connection_limit", "DEFAULT_CONNECTION_LIMIT"), 1, "default_connection_limit")
        ),
        secret_rotation_grace_s=_as_float(
            _pick(webhooks, "secret_rotation_grace_s", "WEBHOOK_SECRET_ROTATION_GRACE_S"), 86400.0, "secret_rotation_grace_s"
        ),
        automation_webhook_url=str(_pick(automation, "url", "N8N_INBOUND_WEBHOOK_URL", "N8N_WEBHOOK_URL")).strip(),
        automation_webhook_token=str(_pick(automation, "token", "N8N_WEBHOOK_TOKEN")).strip(),
        forward_inbound_events=_as_bool(_pick(automation, "forward_inbound", "FORWARD_INBOUND_EVENTS"), True),
        reconciler=policy,
    )


def _as_float(value: Any, default: float, name: str) -> float:
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigError("Valor numérico inválido em configuração.", details={"field": name, "value": str(value)})


def _as_bool(value: Any, default: bool) -> bool:
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def _parse_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError("Falha ao ler arquivo de configuração.", details={"path": path, "error": str(e)})
    return _parse_text(text, source=path)


def _parse_text(text: str, source: str = "inline") -> dict[str, Any]:
    raw = (text or "").lstrip()
    if not raw:
        return {}
    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ConfigError("JSON inválido em configuração.", details={"source": source, "error": str(e)})
    else:
        try:
            data = load_yaml(raw).data
        except YAMLValidationError as e:
            raise ConfigError("YAML inválido em configuração.", details={"source": source, "error": str(e)})
    if not isinstance(data, dict):
        raise ConfigError("Configuração deve ser um mapa.", details={"source": source, "type": type(data).__name__})
    return data
