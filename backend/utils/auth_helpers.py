"""
Authentication helpers.

Every handler receives an explicit ``RequestContext`` built from the bearer
token (and, when the token carries no workspace, the ``X-Workspace-Id``
header) instead of reading ambient session state.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

# ==================== CONFIGURATION ====================
JWT_SECRET = (
    os.getenv("JWT_SECRET")
    or os.getenv("APP_JWT_SECRET")
    or "whatsapp-crm-secret-key-2025"
).strip()

SUPERADMIN_ROLE = "superadmin"

# Security bearer for FastAPI
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    role: str
    workspace_id: Optional[str]

    @property
    def is_superadmin(self) -> bool:
        return self.role == SUPERADMIN_ROLE


# ==================== TOKEN FUNCTIONS ====================
def create_token(user_id: str, role: str, workspace_id: Optional[str] = None, expires_in_s: int = 86400) -> str:
    """
    Create a signed HS256 access token.

    Args:
        user_id: The user's ID
        role: The user's role
        workspace_id: Optional workspace the user belongs to
        expires_in_s: Lifetime in seconds

    Returns:
        The encoded JWT
    """
    payload = {
        "user_id": user_id,
        "role": role,
        "workspace_id": workspace_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in_s),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def verify_token(http_request: Request, credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Verify a JWT token from the request.

    Args:
        http_request: The FastAPI Request object
        credentials: The HTTP bearer credentials

    Returns:
        The decoded token payload

    Raises:
        HTTPException: If token is missing, expired, or invalid
    """
    token = credentials.credentials if credentials else None
    if not token:
        token = http_request.cookies.get("access_token")
    if not token:
        raise HTTPException(status_code=401, detail="Token não fornecido")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expirado")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Token inválido")


def get_request_context(http_request: Request, payload: dict = Depends(verify_token)) -> RequestContext:
    user_id = str(payload.get("user_id") or payload.get("sub") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Token sem usuário")
    role = str(payload.get("role") or "").strip().lower()
    workspace_id = str(payload.get("workspace_id") or "").strip()
    if not workspace_id:
        workspace_id = (http_request.headers.get("x-workspace-id") or "").strip()
    return RequestContext(user_id=user_id, role=role, workspace_id=workspace_id or None)


def ensure_workspace_access(ctx: RequestContext, workspace_id: Optional[str]) -> str:
    """Return the workspace the caller may act on, or raise 400/403."""
    target = (workspace_id or "").strip() or (ctx.workspace_id or "")
    if not target:
        raise HTTPException(status_code=400, detail="workspace_id é obrigatório")
    if ctx.is_superadmin:
        return target
    if ctx.workspace_id != target:
        logger.warning("Workspace access denied user=%s workspace=%s", ctx.user_id, target)
        raise HTTPException(status_code=403, detail="Acesso negado a este workspace")
    return target
