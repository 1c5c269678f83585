"""
API route modules.
"""

from clearance.api.routes.workflows import router as workflows_router
from clearance.api.routes.realtime import router as realtime_router

__all__ = ["realtime_router", "workflows_router"]
