"""
Routes package for the Tezeus CRM message pipeline.

Each router handles a specific domain of the API.
"""

from .messages_routes import router as messages_router
from .webhooks_routes import router as webhooks_router

__all__ = [
    "messages_router",
    "webhooks_router",
]
