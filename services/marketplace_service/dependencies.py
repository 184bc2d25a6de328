"""FastAPI dependencies wiring the settlement components together."""

from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, Request
from libs.common.config import get_settings
from libs.common.middleware import client_ip
from libs.common.rate_limit import ReferenceRateLimiter
from services.marketplace_service.paystack_client import PaystackClient
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.inventory_ledger import InventoryLedger
from services.marketplace_service.services.settlement import SettlementService
from services.marketplace_service.services.subscriptions import SubscriptionService
from services.marketplace_service.services.visibility import (
    PlanCatalog,
    ProductVisibilityEnforcer,
)


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def get_reference_limiter(request: Request) -> ReferenceRateLimiter:
    return request.app.state.reference_limiter


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog.from_settings()


def get_paystack_client(
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> PaystackClient:
    return PaystackClient(audit=audit)


def get_inventory_ledger(
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> InventoryLedger:
    return InventoryLedger(audit=audit)


def get_enforcer(
    plans: Annotated[PlanCatalog, Depends(get_plan_catalog)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> ProductVisibilityEnforcer:
    return ProductVisibilityEnforcer(plans, audit=audit)


def get_subscription_service(
    plans: Annotated[PlanCatalog, Depends(get_plan_catalog)],
    enforcer: Annotated[ProductVisibilityEnforcer, Depends(get_enforcer)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> SubscriptionService:
    return SubscriptionService(plans, enforcer, audit=audit)


def get_settlement_service(
    gateway: Annotated[PaystackClient, Depends(get_paystack_client)],
    ledger: Annotated[InventoryLedger, Depends(get_inventory_ledger)],
    enforcer: Annotated[ProductVisibilityEnforcer, Depends(get_enforcer)],
    subscriptions: Annotated[SubscriptionService, Depends(get_subscription_service)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> SettlementService:
    return SettlementService(
        gateway,
        ledger,
        enforcer,
        subscriptions,
        audit=audit,
        delivery_fee_kobo=get_settings().DELIVERY_FEE_KOBO,
    )


def request_audit_fields(request: Request) -> dict[str, Any]:
    """Client IP and user agent for audit records."""
    return {
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }
