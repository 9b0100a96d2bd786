"""
HTTP surface for the messaging feature.
"""

from .router import admin_router, router

__all__ = ["admin_router", "router"]
