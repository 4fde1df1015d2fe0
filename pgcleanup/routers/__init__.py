"""
API routers for admin endpoints.
"""

from pgcleanup.routers.admin_cleanup import router as admin_cleanup_router

__all__ = [
    "admin_cleanup_router",
]
