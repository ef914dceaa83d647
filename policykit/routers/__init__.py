"""API routers for the PolicyKit service."""
from fastapi import APIRouter

from . import catalog, health, policy, receipts


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(catalog.router)
    api_router.include_router(receipts.router)
    api_router.include_router(policy.router)
    return api_router
