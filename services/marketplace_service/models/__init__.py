"""Marketplace Service models package."""

from services.marketplace_service.models.audit import PaymentAuditEvent
from services.marketplace_service.models.catalog import (
    Product,
    Store,
    SubscriptionPayment,
)
from services.marketplace_service.models.enums import (
    AMOUNT_MISMATCH_EVENTS,
    RATE_LIMIT_EVENTS,
    VERIFICATION_FAILURE_EVENTS,
    WEBHOOK_ERROR_EVENTS,
    AuditEventType,
    DeactivationReason,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    SubscriptionPlan,
    SubscriptionStatus,
)
from services.marketplace_service.models.orders import MainOrder, Order, OrderItem

__all__ = [
    # Catalog
    "Store",
    "Product",
    "SubscriptionPayment",
    # Orders
    "MainOrder",
    "Order",
    "OrderItem",
    # Audit
    "PaymentAuditEvent",
    # Enums
    "AuditEventType",
    "DeactivationReason",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentType",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "AMOUNT_MISMATCH_EVENTS",
    "RATE_LIMIT_EVENTS",
    "VERIFICATION_FAILURE_EVENTS",
    "WEBHOOK_ERROR_EVENTS",
]
