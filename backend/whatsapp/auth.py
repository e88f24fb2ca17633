"""Credentials attached to outgoing calls.

Evolution authenticates with a global ``apikey`` header; automation flows
(N8N and similar) optionally expect a bearer token configured per workspace.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import AuthError


class AuthStrategy:
    async def get_headers(self) -> dict[str, str]:
        raise NotImplementedError


class NoAuth(AuthStrategy):
    async def get_headers(self) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class EvolutionApiKeyAuth(AuthStrategy):
    api_key: str
    header_name: str = "apikey"

    async def get_headers(self) -> dict[str, str]:
        # fail before the request instead of letting Evolution answer 401
        if not self.api_key:
            raise AuthError("EVOLUTION_API_KEY não configurada.", transient=False)
        return {self.header_name: self.api_key}


@dataclass(frozen=True)
class BearerTokenAuth(AuthStrategy):
    token: str

    async def get_headers(self) -> dict[str, str]:
        if not self.token:
            raise AuthError("Token do webhook de automação ausente.", transient=False)
        return {"Authorization": f"Bearer {self.token}"}


def automation_auth(secret: Optional[str]) -> AuthStrategy:
    """Bearer when the workspace configured a secret, nothing otherwise."""
    return BearerTokenAuth(token=secret) if secret else NoAuth()
