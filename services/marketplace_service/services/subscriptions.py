"""Store subscription lifecycle: plan changes, paid renewals and expiry.

Every path that changes a store's plan re-runs visibility enforcement so the
number of live products always matches what the store is paying for.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import add_months, ensure_utc, utc_now
from libs.common.logging import get_logger
from libs.db.unit_of_work import UnitOfWork
from services.marketplace_service.errors import (
    AmountMismatchError,
    DuplicateProcessingError,
    NotFoundError,
    ValidationError,
)
from services.marketplace_service.models import (
    AuditEventType,
    PaymentType,
    Store,
    SubscriptionPayment,
    SubscriptionPlan,
    SubscriptionStatus,
)
from services.marketplace_service.paystack_client import (
    InitializedTransaction,
    PaystackClient,
    VerifiedTransaction,
)
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.visibility import (
    EnforcementResult,
    PlanCatalog,
    ProductVisibilityEnforcer,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class SubscriptionPaymentResult:
    store_id: uuid.UUID
    plan: SubscriptionPlan
    applied: bool
    enforcement: Optional[EnforcementResult] = None
    expiry: Optional[datetime] = None


def _parse_plan(value) -> SubscriptionPlan:
    try:
        return SubscriptionPlan(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown subscription plan: {value!r}") from exc


def _parse_store_id(value) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid store id: {value!r}") from exc


class SubscriptionService:
    def __init__(
        self,
        plans: PlanCatalog,
        enforcer: ProductVisibilityEnforcer,
        audit: Optional[AuditLogger] = None,
    ):
        self.plans = plans
        self.enforcer = enforcer
        self.audit = audit

    async def _get_store(self, db: AsyncSession, store_id: uuid.UUID) -> Store:
        store = await db.get(Store, store_id, populate_existing=True)
        if store is None:
            raise NotFoundError(f"Store {store_id} not found")
        return store

    async def change_plan(
        self,
        db: AsyncSession,
        store_id: uuid.UUID,
        plan: SubscriptionPlan,
        *,
        start: Optional[datetime] = None,
        expiry: Optional[datetime] = None,
    ) -> tuple[Store, EnforcementResult]:
        """Admin plan override. Dates default to keeping the current ones."""
        plan = _parse_plan(plan)
        store = await self._get_store(db, store_id)
        previous = store.subscription_plan

        async with UnitOfWork(db):
            store.subscription_plan = plan
            store.product_limit = self.plans.limit_for(plan)
            store.subscription_status = SubscriptionStatus.ACTIVE
            if start is not None:
                store.subscription_start_date = start
            if expiry is not None:
                store.subscription_expiry_date = expiry
            if plan == SubscriptionPlan.FREE:
                store.subscription_expiry_date = None

        enforcement = await self.enforcer.enforce(db, store_id)
        logger.info(
            "Store %s plan changed %s -> %s",
            store_id,
            previous.value,
            plan.value,
        )
        if self.audit is not None:
            self.audit.log(
                f"store:{store_id}",
                AuditEventType.SUBSCRIPTION_UPDATED,
                user_id=store.owner_user_id,
                metadata={
                    "source": "admin",
                    "previous_plan": previous.value,
                    "plan": plan.value,
                },
            )
        return store, enforcement

    async def initialize_payment(
        self,
        db: AsyncSession,
        gateway: PaystackClient,
        *,
        store_id: uuid.UUID,
        plan: SubscriptionPlan,
        email: str,
        user_id: str,
    ) -> tuple[InitializedTransaction, int]:
        plan = _parse_plan(plan)
        store = await self._get_store(db, store_id)
        if store.owner_user_id != user_id:
            raise NotFoundError(f"Store {store_id} not found")

        amount_kobo = self.plans.price_for(plan)
        if amount_kobo <= 0:
            raise ValidationError(f"Plan {plan.value} does not require payment")

        settings = get_settings()
        transaction = await gateway.initialize(
            email,
            amount_kobo,
            callback_url=f"{settings.APP_URL.rstrip('/')}/dashboard/subscription/callback",
            metadata={
                "type": PaymentType.SUBSCRIPTION.value,
                "store_id": str(store_id),
                "plan": plan.value,
                "user_id": user_id,
            },
        )
        return transaction, amount_kobo

    async def apply_subscription_payment(
        self, db: AsyncSession, transaction: VerifiedTransaction
    ) -> SubscriptionPaymentResult:
        """
        Activate the paid plan for one month from now.

        Every applied reference is recorded in ``subscription_payments``; its
        unique index rejects a replay, however old, and nothing changes.

        Raises:
            NotFoundError: unknown store
            AmountMismatchError: paid amount differs from the plan price
        """
        metadata = transaction.metadata
        store_id = _parse_store_id(metadata.get("store_id"))
        plan = _parse_plan(metadata.get("plan"))

        expected = self.plans.price_for(plan)
        if transaction.amount_kobo != expected:
            if self.audit is not None:
                self.audit.log(
                    transaction.reference,
                    AuditEventType.AMOUNT_MISMATCH,
                    user_id=metadata.get("user_id"),
                    amount_kobo=transaction.amount_kobo,
                    expected_amount_kobo=expected,
                    metadata={"type": "subscription", "plan": plan.value},
                )
            raise AmountMismatchError(
                "Payment amount does not match plan price.",
                expected=expected,
                actual=transaction.amount_kobo,
            )

        store = await self._get_store(db, store_id)
        now = utc_now()
        expiry = add_months(now, 1)
        paid_at = transaction.paid_at or now

        try:
            async with UnitOfWork(db):
                db.add(
                    SubscriptionPayment(
                        reference=transaction.reference,
                        store_id=store_id,
                        plan=plan,
                        amount_kobo=transaction.amount_kobo,
                        paid_at=paid_at,
                    )
                )
                try:
                    await db.flush()
                except IntegrityError as exc:
                    raise DuplicateProcessingError(
                        f"Subscription payment {transaction.reference} already applied"
                    ) from exc

                store.subscription_plan = plan
                store.product_limit = self.plans.limit_for(plan)
                store.subscription_status = SubscriptionStatus.ACTIVE
                store.subscription_start_date = now
                store.subscription_expiry_date = expiry
                store.last_payment_reference = transaction.reference
                store.last_payment_amount_kobo = transaction.amount_kobo
                store.last_payment_date = paid_at
        except DuplicateProcessingError:
            logger.info(
                "Subscription payment %s already applied to store %s",
                transaction.reference,
                store_id,
            )
            if self.audit is not None:
                self.audit.log(
                    transaction.reference,
                    AuditEventType.DUPLICATE_DETECTED,
                    user_id=metadata.get("user_id"),
                    metadata={"type": "subscription", "store_id": str(store_id)},
                )
            return SubscriptionPaymentResult(store_id=store_id, plan=plan, applied=False)

        enforcement = await self.enforcer.enforce(db, store_id)
        logger.info(
            "Subscription updated for store %s: %s until %s",
            store_id,
            plan.value,
            expiry.isoformat(),
        )
        if self.audit is not None:
            self.audit.log(
                transaction.reference,
                AuditEventType.SUBSCRIPTION_UPDATED,
                user_id=metadata.get("user_id"),
                amount_kobo=transaction.amount_kobo,
                metadata={
                    "store_id": str(store_id),
                    "plan": plan.value,
                    "expires_at": expiry.isoformat(),
                },
            )
        return SubscriptionPaymentResult(
            store_id=store_id,
            plan=plan,
            applied=True,
            enforcement=enforcement,
            expiry=expiry,
        )

    async def check_subscription(
        self,
        db: AsyncSession,
        store_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Optional[EnforcementResult]:
        """Downgrade an expired paid plan to free. Returns None when nothing changed."""
        now = now or utc_now()
        store = await self._get_store(db, store_id)
        expiry = ensure_utc(store.subscription_expiry_date)

        if store.subscription_plan == SubscriptionPlan.FREE:
            return None
        if expiry is None or expiry > now:
            return None

        previous = store.subscription_plan
        async with UnitOfWork(db):
            store.subscription_plan = SubscriptionPlan.FREE
            store.product_limit = self.plans.limit_for(SubscriptionPlan.FREE)
            store.subscription_status = SubscriptionStatus.EXPIRED
            store.subscription_expiry_date = None

        enforcement = await self.enforcer.enforce(db, store_id)
        logger.info(
            "Store %s subscription expired, downgraded %s -> free",
            store_id,
            previous.value,
        )
        if self.audit is not None:
            self.audit.log(
                f"store:{store_id}",
                AuditEventType.SUBSCRIPTION_DOWNGRADED,
                user_id=store.owner_user_id,
                metadata={
                    "previous_plan": previous.value,
                    "expired_at": expiry.isoformat(),
                    "deactivated": enforcement.deactivated,
                },
            )
        return enforcement

    async def sweep_expired(
        self, db: AsyncSession, now: Optional[datetime] = None
    ) -> int:
        """Downgrade every store whose paid plan has lapsed. Returns stores changed."""
        now = now or utc_now()
        result = await db.execute(
            select(Store.id).where(
                Store.subscription_plan != SubscriptionPlan.FREE,
                Store.subscription_expiry_date.is_not(None),
                Store.subscription_expiry_date <= now,
            )
        )
        downgraded = 0
        for store_id in result.scalars().all():
            if await self.check_subscription(db, store_id, now) is not None:
                downgraded += 1
        return downgraded
