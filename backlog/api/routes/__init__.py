"""
API routes module.
"""

from backlog.api.routes.health import router as health_router
from backlog.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "health_router"]
