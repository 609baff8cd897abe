"""
Supabase clients for the message pipeline.

The server writes with the service-role key (RLS bypass). The live message
feed used by the CRM frontend subscribes with the public anon key, which
only ever reads rows the workspace is allowed to see.
"""

from supabase import create_client, Client
import os
import logging
from typing import Optional, cast, Any, Dict, Tuple
import base64
import json

logger = logging.getLogger(__name__)

_SUPABASE_NOT_CONFIGURED_ERROR = (
    "Supabase not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)."
)


def _get_first_env(*names: str) -> Optional[str]:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return None


def _jwt_role(token: Optional[str]) -> str:
    """Role claim of a Supabase key, read without verifying the signature."""
    parts = (token or "").split(".")
    if len(parts) < 2:
        return ""
    payload_b64 = parts[1]
    try:
        raw = base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4))
        payload: Dict[str, Any] = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return ""
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("role") or "").strip().lower()


def service_role_key() -> Optional[str]:
    key = _get_first_env("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY", "SUPABASE_KEY")
    # pipeline writes must bypass RLS
    if key and _jwt_role(key) == "service_role":
        return key
    return None


def realtime_credentials() -> Tuple[str, str]:
    """URL and key for the live ``messages`` feed; empty strings when unset."""
    url = _get_first_env("SUPABASE_URL", "VITE_SUPABASE_URL") or ""
    key = _get_first_env("SUPABASE_ANON_KEY", "VITE_SUPABASE_PUBLISHABLE_KEY") or ""
    return url, key


class _SupabaseNotConfigured:
    def table(self, *_args, **_kwargs):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)

    def rpc(self, *_args, **_kwargs):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)

    @property
    def storage(self):
        raise RuntimeError(_SUPABASE_NOT_CONFIGURED_ERROR)


def create_service_client() -> Client:
    url = _get_first_env("SUPABASE_URL", "VITE_SUPABASE_URL") or ""
    key = service_role_key()
    if url and key:
        return create_client(url, key)
    logger.warning("Supabase not configured: set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.")
    return cast(Client, _SupabaseNotConfigured())


supabase: Client = create_service_client()
