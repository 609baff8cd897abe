"""
Utils package for the Tezeus CRM message pipeline.
"""

from .db_helpers import (
    is_transient_db_error,
    is_unique_violation,
    is_supabase_not_configured_error,
    db_call_with_retry,
)

from .phone_utils import (
    normalize_phone_number,
    is_group_jid,
    extract_phone_from_jid,
    phone_to_jid,
)

__all__ = [
    # DB helpers
    "is_transient_db_error",
    "is_unique_violation",
    "is_supabase_not_configured_error",
    "db_call_with_retry",
    # Phone utils
    "normalize_phone_number",
    "is_group_jid",
    "extract_phone_from_jid",
    "phone_to_jid",
]
