"""Marketplace service routers package."""

from services.marketplace_service.routers.audit import router as audit_router
from services.marketplace_service.routers.checkout import router as checkout_router
from services.marketplace_service.routers.orders import router as orders_router
from services.marketplace_service.routers.stores import router as stores_router
from services.marketplace_service.routers.webhooks import router as webhooks_router

__all__ = [
    "audit_router",
    "checkout_router",
    "orders_router",
    "stores_router",
    "webhooks_router",
]
