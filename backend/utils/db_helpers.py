"""
Database error classification helpers.

supabase-py surfaces PostgREST failures as generic exceptions; these helpers
look at the message text to decide how callers should react.
"""

from typing import Any


def is_transient_db_error(exc: Exception) -> bool:
    """Check if an exception is a transient database error that may be retried."""
    s = str(exc or "").lower()
    transient_markers = [
        "timeout",
        "timed out",
        "temporarily unavailable",
        "connection refused",
        "connection reset",
        "network",
        "server disconnected",
        "502",
        "503",
        "504",
        "bad gateway",
        "service unavailable",
    ]
    return any(m in s for m in transient_markers)


def is_unique_violation(exc: Exception) -> bool:
    """Check if an insert failed on a unique constraint (Postgres 23505)."""
    s = str(exc or "").lower()
    return "23505" in s or "duplicate key" in s or "duplicate" in s


def is_missing_table_or_schema_error(exc: Exception, table_name: str) -> bool:
    """Check if an exception indicates a missing table or schema."""
    s = str(exc or "").lower()
    t = (table_name or "").lower()
    if not t:
        return False
    markers = [
        "does not exist",
        "undefined table",
        "could not find the table",
        "relation",
        "pgrst",
    ]
    return t in s and any(m in s for m in markers)


def is_supabase_not_configured_error(exc: Exception) -> bool:
    """Check if an exception indicates Supabase is not configured."""
    s = str(exc or "").lower()
    return "supabase não configurado" in s or "supabase nao configurado" in s


def first_row(result: Any) -> dict:
    """First row of a supabase-py response, or ``{}``."""
    data = getattr(result, "data", None)
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    if isinstance(data, dict):
        return data
    return {}


def all_rows(result: Any) -> list:
    data = getattr(result, "data", None)
    if isinstance(data, list):
        return [r for r in data if isinstance(r, dict)]
    return []
