"""
API Routers

This package contains the FastAPI routers mounted by main.py.
"""

from sltp_service.routers import sltp_webhook_router

__all__ = [
    "sltp_webhook_router",
]
