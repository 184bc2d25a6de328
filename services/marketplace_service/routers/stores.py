"""Store router: subscription payments, plan overrides and visibility enforcement."""

import uuid

from fastapi import APIRouter, Depends, Request
from libs.auth.dependencies import get_current_user, require_admin
from libs.auth.models import AuthUser
from libs.common.rate_limit import payment_limit
from libs.db.session import get_async_db
from services.marketplace_service.dependencies import (
    get_enforcer,
    get_paystack_client,
    get_subscription_service,
)
from services.marketplace_service.errors import NotFoundError, ValidationError
from services.marketplace_service.models import Store
from services.marketplace_service.paystack_client import PaystackClient
from services.marketplace_service.schemas import (
    AdminSubscriptionResponse,
    AdminSubscriptionUpdate,
    EnforcementResponse,
    StoreSubscriptionResponse,
    SubscriptionCheckResponse,
    SubscriptionInitializeRequest,
    SubscriptionInitializeResponse,
)
from services.marketplace_service.services.subscriptions import SubscriptionService
from services.marketplace_service.services.visibility import ProductVisibilityEnforcer
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["stores"])


async def _get_managed_store(
    db: AsyncSession, store_id: uuid.UUID, current_user: AuthUser
) -> Store:
    """Store owned by the caller (admins may act on any store)."""
    store = await db.get(Store, store_id, populate_existing=True)
    if store is None or (
        not current_user.is_admin and store.owner_user_id != current_user.user_id
    ):
        raise NotFoundError(f"Store {store_id} not found")
    return store


@router.post(
    "/stores/{store_id}/subscription/initialize",
    response_model=SubscriptionInitializeResponse,
)
@payment_limit
async def initialize_subscription(
    request: Request,
    store_id: uuid.UUID,
    payload: SubscriptionInitializeRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaystackClient = Depends(get_paystack_client),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Start a Paystack payment for a paid plan."""
    email = current_user.email or payload.email
    if not email:
        raise ValidationError("An email address is required for payment")

    transaction, amount_kobo = await subscriptions.initialize_payment(
        db,
        gateway,
        store_id=store_id,
        plan=payload.plan,
        email=email,
        user_id=current_user.user_id,
    )
    return SubscriptionInitializeResponse(
        reference=transaction.reference,
        authorization_url=transaction.authorization_url,
        access_code=transaction.access_code,
        amount_kobo=amount_kobo,
        plan=payload.plan,
    )


@router.post(
    "/stores/{store_id}/subscription/check",
    response_model=SubscriptionCheckResponse,
)
async def check_subscription(
    store_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Downgrade the store to the free plan if its paid plan has expired."""
    await _get_managed_store(db, store_id, current_user)
    enforcement = await subscriptions.check_subscription(db, store_id)
    store = await db.get(Store, store_id)
    return SubscriptionCheckResponse(
        store=StoreSubscriptionResponse.model_validate(store),
        downgraded=enforcement is not None,
        enforcement=(
            EnforcementResponse.model_validate(enforcement) if enforcement else None
        ),
    )


@router.put(
    "/admin/stores/{store_id}/subscription",
    response_model=AdminSubscriptionResponse,
)
async def set_store_subscription(
    store_id: uuid.UUID,
    payload: AdminSubscriptionUpdate,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Set a store's plan directly and re-apply its product limit."""
    store, enforcement = await subscriptions.change_plan(
        db,
        store_id,
        payload.plan,
        start=payload.start_date,
        expiry=payload.expiry_date,
    )
    return AdminSubscriptionResponse(
        store=StoreSubscriptionResponse.model_validate(store),
        enforcement=EnforcementResponse.model_validate(enforcement),
    )


@router.post(
    "/stores/{store_id}/products/enforce-visibility",
    response_model=EnforcementResponse,
)
async def enforce_visibility(
    store_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    enforcer: ProductVisibilityEnforcer = Depends(get_enforcer),
):
    """Called after product creation so the newest products stay visible."""
    await _get_managed_store(db, store_id, current_user)
    return await enforcer.enforce(db, store_id)
