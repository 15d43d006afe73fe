"""
API routes module.
"""

from taskpipe.api.routes.health import router as health_router
from taskpipe.api.routes.tasks import router as tasks_router

__all__ = ["tasks_router", "health_router"]
