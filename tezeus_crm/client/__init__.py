"""
Client-side view of conversation messages: TTL page cache, shared
per-workspace live channel, and the per-conversation ordered list.
"""

from .cache import MessageCache
from .history import HistoryClient, HistoryResult
from .live import LiveChannelRegistry, LiveEvent, SupabaseRealtimeSource, Subscription
from .messages import ConversationMessages

__all__ = [
    "MessageCache",
    "HistoryClient",
    "HistoryResult",
    "LiveChannelRegistry",
    "LiveEvent",
    "SupabaseRealtimeSource",
    "Subscription",
    "ConversationMessages",
]
