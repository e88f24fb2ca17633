"""
Routes package for the WhatsApp connection backend.

Each router handles a specific domain of the API.
"""

from .connections_routes import router as connections_router
from .webhooks_routes import router as webhooks_router
from .messages_routes import router as messages_router

__all__ = [
    "connections_router",
    "webhooks_router",
    "messages_router",
]
