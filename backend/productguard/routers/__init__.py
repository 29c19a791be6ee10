"""ProductGuard Enforcement Core - API Routers"""
from .auth import router as auth_router
from .infringements import router as infringements_router
from .enforcement import router as enforcement_router
from .scheduler import router as scheduler_router

__all__ = [
    "auth_router",
    "infringements_router",
    "enforcement_router",
    "scheduler_router",
]
