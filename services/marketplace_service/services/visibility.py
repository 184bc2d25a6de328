"""Per-store cap on visible products, driven by subscription plan.

The newest non-deleted products win: after ``enforce()`` exactly
``min(total, limit)`` of them are active and every older one is inactive
with reason ``plan_limit``.
"""

import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.unit_of_work import UnitOfWork
from services.marketplace_service.errors import NotFoundError, ValidationError
from services.marketplace_service.models import (
    AuditEventType,
    DeactivationReason,
    Product,
    Store,
    SubscriptionPlan,
)
from services.marketplace_service.services.audit_logger import AuditLogger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlanCatalog:
    """Immutable plan → product limit / price table. ``None`` = unlimited."""

    limits: Mapping[SubscriptionPlan, Optional[int]]
    prices_kobo: Mapping[SubscriptionPlan, int] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self):
        for plan in SubscriptionPlan:
            if plan not in self.limits:
                raise ValueError(f"No product limit configured for plan {plan.value}")
            limit = self.limits[plan]
            if limit is not None and limit < 0:
                raise ValueError(f"Product limit for {plan.value} must be >= 0")
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))
        object.__setattr__(
            self, "prices_kobo", MappingProxyType(dict(self.prices_kobo))
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PlanCatalog":
        settings = settings or get_settings()
        return cls(
            limits={
                SubscriptionPlan(name): limit
                for name, limit in settings.PLAN_PRODUCT_LIMITS.items()
            },
            prices_kobo={
                SubscriptionPlan(name): price
                for name, price in settings.PLAN_PRICES_KOBO.items()
            },
        )

    def limit_for(self, plan: SubscriptionPlan) -> Optional[int]:
        return self.limits[SubscriptionPlan(plan)]

    def price_for(self, plan: SubscriptionPlan) -> int:
        try:
            return self.prices_kobo[SubscriptionPlan(plan)]
        except KeyError as exc:
            raise ValidationError(f"Plan {plan} is not for sale") from exc


@dataclass
class EnforcementResult:
    store_id: uuid.UUID
    activated: int
    deactivated: int
    visible_count: int
    total: int
    limit: Optional[int] = None


class ProductVisibilityEnforcer:
    def __init__(self, plans: PlanCatalog, audit: Optional[AuditLogger] = None):
        self.plans = plans
        self.audit = audit

    async def enforce(self, db: AsyncSession, store_id: uuid.UUID) -> EnforcementResult:
        """
        Activate the newest ``limit`` products of a store and hide the rest.

        Idempotent: a second call with nothing changed reports zero
        activations and deactivations.

        Raises:
            NotFoundError: unknown store
        """
        store = await db.get(Store, store_id, populate_existing=True)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")

        limit = self.plans.limit_for(store.subscription_plan)

        result = await db.execute(
            select(Product)
            .where(Product.store_id == store_id, Product.is_deleted.is_(False))
            .order_by(Product.created_at.desc(), Product.id.desc())
            .execution_options(populate_existing=True)
        )
        products = list(result.scalars().all())

        visible_count = len(products) if limit is None else min(len(products), limit)
        visible = products[:visible_count]
        hidden = products[visible_count:]

        activate_ids = [p.id for p in visible if not p.is_active]
        deactivate_ids = [p.id for p in hidden if p.is_active]
        now = utc_now()

        async with UnitOfWork(db):
            for product in visible:
                if not product.is_active:
                    product.is_active = True
                    product.deactivated_at = None
                    product.deactivation_reason = None
            for product in hidden:
                if product.is_active:
                    product.is_active = False
                    product.deactivated_at = now
                    product.deactivation_reason = DeactivationReason.PLAN_LIMIT

        enforcement = EnforcementResult(
            store_id=store_id,
            activated=len(activate_ids),
            deactivated=len(deactivate_ids),
            visible_count=visible_count,
            total=len(products),
            limit=limit,
        )
        logger.info(
            "Enforced product limit for store %s: activated %d, deactivated %d",
            store_id,
            enforcement.activated,
            enforcement.deactivated,
            extra={
                "extra_fields": {
                    "store_id": str(store_id),
                    "plan": store.subscription_plan.value,
                    "limit": limit,
                    "visible": visible_count,
                    "total": enforcement.total,
                }
            },
        )
        if self.audit is not None and (enforcement.activated or enforcement.deactivated):
            self.audit.log(
                f"store:{store_id}",
                AuditEventType.VISIBILITY_ENFORCED,
                user_id=store.owner_user_id,
                metadata={
                    "plan": store.subscription_plan.value,
                    "limit": limit,
                    "activated": enforcement.activated,
                    "deactivated": enforcement.deactivated,
                    "visible": visible_count,
                    "total": enforcement.total,
                },
            )
        return enforcement
