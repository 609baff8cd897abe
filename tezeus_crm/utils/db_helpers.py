"""
Database helper utilities.

Error classification for Supabase/PostgREST failures and a retry wrapper
for the synchronous Supabase client calls made from async handlers.
"""

import asyncio
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


# ==================== ERROR DETECTION ====================
def is_transient_db_error(exc: Exception) -> bool:
    """Check if an exception is a transient database error that may be retried."""
    s = str(exc or "").lower()
    transient_markers = [
        "timeout",
        "timed out",
        "temporarily unavailable",
        "connection refused",
        "connection reset",
        "connection error",
        "network",
        "dns",
        "name or service not known",
        "failed to establish a new connection",
        "server disconnected",
        "502",
        "503",
        "504",
        "bad gateway",
        "gateway timeout",
        "service unavailable",
    ]
    return any(m in s for m in transient_markers)


def is_unique_violation(exc: Exception) -> bool:
    """Check if an exception is a Postgres unique-constraint violation (23505)."""
    s = str(exc or "").lower()
    return "23505" in s or "duplicate key" in s or "unique constraint" in s


def is_supabase_not_configured_error(exc: Exception) -> bool:
    s = str(exc or "").lower()
    return "supabase not configured" in s


# ==================== RETRY LOGIC ====================
async def db_call_with_retry(op_name: str, fn: Callable[[], Any], max_attempts: int = 3) -> Any:
    """
    Execute a database call, retrying transient errors with backoff.

    Args:
        op_name: Name of the operation (for logging)
        fn: Zero-argument callable performing the query
        max_attempts: Maximum number of attempts; use 1 for non-idempotent writes

    Raises:
        Exception: If all attempts fail or a non-transient error occurs
    """
    last_exc: Exception = Exception(f"{op_name} failed")
    for attempt in range(1, max(1, max_attempts) + 1):
        try:
            return fn()
        except Exception as e:
            last_exc = e
            if attempt >= max_attempts or not is_transient_db_error(e):
                raise
            sleep_s = min(2.0, 0.15 * (2 ** (attempt - 1)))
            logger.warning(f"{op_name} failed (attempt {attempt}/{max_attempts}): {e}")
            await asyncio.sleep(sleep_s)
    raise last_exc
