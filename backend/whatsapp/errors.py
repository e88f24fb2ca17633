from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class WhatsAppError(Exception):
    message: str
    code: str = "whatsapp_error"
    transient: bool = False
    details: Optional[dict[str, Any]] = None

    http_status = 500

    def __str__(self) -> str:
        return self.message

    def to_response(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


def _merge_details(provider: str, status_code: Optional[int], details: Optional[dict[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {"provider": provider}
    if status_code is not None:
        merged["status_code"] = status_code
    if details:
        merged.update(details)
    return merged


class ConfigError(WhatsAppError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="config_error", transient=False, details=details)


class AuthError(WhatsAppError):
    http_status = 502

    def __init__(self, message: str, *, transient: bool = False, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="auth_error", transient=transient, details=details)


class ProviderRequestError(WhatsAppError):
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        transient: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code="provider_request_error",
            transient=transient,
            details=_merge_details(provider, status_code, details),
        )


class ProviderUnavailableError(WhatsAppError):
    """Network failure or 5xx from a remote collaborator. Retried by the next poll, never inline."""

    http_status = 503

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            code="provider_unavailable",
            transient=True,
            details=_merge_details(provider, status_code, details),
        )


class NotFoundError(WhatsAppError):
    http_status = 404

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="not_found", transient=False, details=details)


class QuotaExceededError(WhatsAppError):
    http_status = 429

    def __init__(self, message: str, *, used: Optional[int] = None, limit: Optional[int] = None, details: Optional[dict[str, Any]] = None):
        merged: dict[str, Any] = dict(details or {})
        if used is not None:
            merged["used"] = used
        if limit is not None:
            merged["limit"] = limit
        super().__init__(message=message, code="quota_exceeded", transient=False, details=merged)

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["quota_exceeded"] = True
        return body


class InvalidArgumentError(WhatsAppError):
    http_status = 400

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="invalid_argument", transient=False, details=details)


class UnauthorizedError(WhatsAppError):
    http_status = 401

    def __init__(self, message: str = "Webhook secret inválido ou ausente."):
        super().__init__(message=message, code="unauthorized", transient=False, details=None)


class BadRequestError(WhatsAppError):
    http_status = 400

    def __init__(self, message: str = "Payload JSON inválido.", *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="bad_request", transient=False, details=details)


class OutboundDeliveryError(WhatsAppError):
    http_status = 502

    def __init__(self, message: str, *, attempted: list[str], errors: dict[str, str]):
        super().__init__(
            message=message,
            code="outbound_delivery_failed",
            transient=False,
            details={"attempted": list(attempted), "errors": dict(errors)},
        )

    @property
    def attempted(self) -> list[str]:
        return list((self.details or {}).get("attempted") or [])

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["attempted"] = self.attempted
        return body
