"""Order router: buyer order lookup and cancellation, admin status changes."""

from typing import Optional

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user, require_admin
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.marketplace_service.dependencies import get_settlement_service
from services.marketplace_service.errors import NotFoundError
from services.marketplace_service.models import MainOrder
from services.marketplace_service.schemas import (
    CancelOrderRequest,
    CancelOrderResponse,
    MainOrderResponse,
    OrderStatusUpdate,
)
from services.marketplace_service.services.settlement import (
    SettlementService,
    get_main_order_by_number,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["orders"])


async def _get_visible_order(
    db: AsyncSession, order_number: str, current_user: AuthUser
) -> MainOrder:
    main_order = await get_main_order_by_number(db, order_number)
    # Other buyers' orders look the same as missing ones
    if not current_user.is_admin and main_order.user_id != current_user.user_id:
        raise NotFoundError(f"Order {order_number} not found")
    return main_order


@router.get("/orders/{order_number}", response_model=MainOrderResponse)
async def get_order(
    order_number: str,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Get one of the current user's orders."""
    return await _get_visible_order(db, order_number, current_user)


@router.post("/orders/{order_number}/cancel", response_model=CancelOrderResponse)
async def cancel_order(
    order_number: str,
    payload: Optional[CancelOrderRequest] = None,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Cancel a pending or processing order and restock its items."""
    main_order = await _get_visible_order(db, order_number, current_user)
    reason = payload.reason if payload else CancelOrderRequest().reason
    result = await settlement.cancel_order(db, main_order, reason=reason)
    return CancelOrderResponse(
        order=MainOrderResponse.model_validate(result.main_order),
        restock=result.restore.outcome.value,
        reactivated_product_ids=result.restore.reactivated_product_ids,
    )


@router.patch("/admin/orders/{order_number}/status", response_model=MainOrderResponse)
async def update_order_status(
    order_number: str,
    payload: OrderStatusUpdate,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """Move an order along pending → processing → shipped → delivered."""
    main_order = await get_main_order_by_number(db, order_number)
    return await settlement.transition_status(
        db, main_order, payload.status, reason=payload.reason or "admin"
    )
