"""API routes package."""

from .catalog import router as catalog_router
from .events import router as events_router
from .health import router as health_router
from .providers import router as providers_router

__all__ = [
    "catalog_router",
    "events_router",
    "health_router",
    "providers_router",
]
