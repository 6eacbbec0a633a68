"""Cancellation API routers."""

from .workflows import router as workflows_router
from .approvals import router as approvals_router
from .operations import router as operations_router

__all__ = ["workflows_router", "approvals_router", "operations_router"]
