"""API routes."""

from .apps import router as apps_router
from .deployments import router as deployments_router

__all__ = [
    "apps_router",
    "deployments_router",
]
