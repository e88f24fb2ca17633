"""
Utils package for the WhatsApp connection backend.
"""

# Database helpers
from .db_helpers import (
    is_transient_db_error,
    is_unique_violation,
    is_missing_table_or_schema_error,
    is_supabase_not_configured_error,
)

# Auth helpers
from .auth_helpers import (
    JWT_SECRET,
    RequestContext,
    create_token,
    verify_token,
    get_request_context,
    ensure_workspace_access,
    security,
)

# Phone helpers
from .phone_utils import (
    normalize_phone_number,
    extract_phone_from_jid,
)

__all__ = [
    "is_transient_db_error",
    "is_unique_violation",
    "is_missing_table_or_schema_error",
    "is_supabase_not_configured_error",
    "JWT_SECRET",
    "RequestContext",
    "create_token",
    "verify_token",
    "get_request_context",
    "ensure_workspace_access",
    "security",
    "normalize_phone_number",
    "extract_phone_from_jid",
]
