"""Checkout router: price verification, payment initialization and polling."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from libs.auth.dependencies import get_current_user, get_optional_user
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.rate_limit import payment_limit, verify_limit
from libs.db.session import get_async_db
from services.marketplace_service.dependencies import (
    get_audit_logger,
    get_paystack_client,
    get_settlement_service,
    request_audit_fields,
)
from services.marketplace_service.errors import AmountMismatchError, ValidationError
from services.marketplace_service.models import AuditEventType, PaymentType
from services.marketplace_service.paystack_client import PaystackClient
from services.marketplace_service.schemas import (
    CheckoutInitializeRequest,
    CheckoutInitializeResponse,
    CheckoutVerifyResponse,
    VerifiedLineResponse,
    VerifiedStoreOrderResponse,
)
from services.marketplace_service.services.amount_verifier import (
    LineRequest,
    StoreOrderRequest,
    verify_checkout_amount,
)
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.settlement import (
    SettlementService,
    SettlementSource,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/checkout", tags=["checkout"])
logger = get_logger(__name__)


@router.post("/initialize", response_model=CheckoutInitializeResponse)
@payment_limit
async def initialize_checkout(
    request: Request,
    payload: CheckoutInitializeRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
    gateway: PaystackClient = Depends(get_paystack_client),
    audit: AuditLogger = Depends(get_audit_logger),
):
    """
    Re-price the cart from the catalog and open a Paystack transaction for
    the authoritative total.
    """
    settings = get_settings()
    store_orders = [
        StoreOrderRequest(
            store_id=order.store_id,
            items=tuple(
                LineRequest(product_id=item.product_id, quantity=item.quantity)
                for item in order.items
            ),
        )
        for order in payload.orders
    ]
    breakdown = await verify_checkout_amount(
        db, store_orders, settings.DELIVERY_FEE_KOBO
    )

    reference = gateway.generate_reference()
    audit_fields = request_audit_fields(request)

    if (
        payload.expected_total_kobo is not None
        and payload.expected_total_kobo != breakdown.grand_total_kobo
    ):
        logger.warning(
            "Client total %d differs from verified total %d for %s",
            payload.expected_total_kobo,
            breakdown.grand_total_kobo,
            current_user.user_id,
        )
        audit.log(
            reference,
            AuditEventType.AMOUNT_MISMATCH,
            user_id=current_user.user_id,
            amount_kobo=payload.expected_total_kobo,
            expected_amount_kobo=breakdown.grand_total_kobo,
            metadata={"stage": "checkout"},
            **audit_fields,
        )
        raise AmountMismatchError(
            "Cart total is out of date. Please review your cart.",
            expected=breakdown.grand_total_kobo,
            actual=payload.expected_total_kobo,
        )

    email = current_user.email or payload.email
    if not email:
        raise ValidationError("An email address is required for payment")

    transaction = await gateway.initialize(
        email,
        breakdown.grand_total_kobo,
        callback_url=f"{settings.APP_URL.rstrip('/')}/checkout/payment-success",
        reference=reference,
        metadata={
            "type": PaymentType.CHECKOUT.value,
            "user_id": current_user.user_id,
            "orders": breakdown.to_metadata(),
            "shipping_info": (
                payload.shipping_info.model_dump() if payload.shipping_info else None
            ),
        },
    )
    logger.info(
        "Checkout initialized",
        extra={
            "extra_fields": {
                "reference": transaction.reference,
                "user_id": current_user.user_id,
                "grand_total_kobo": breakdown.grand_total_kobo,
            }
        },
    )

    return CheckoutInitializeResponse(
        reference=transaction.reference,
        authorization_url=transaction.authorization_url,
        access_code=transaction.access_code,
        subtotal_kobo=breakdown.subtotal_kobo,
        delivery_fee_kobo=breakdown.delivery_fee_kobo,
        grand_total_kobo=breakdown.grand_total_kobo,
        store_orders=[
            VerifiedStoreOrderResponse(
                store_id=order.store_id,
                total_kobo=order.total_kobo,
                items=[
                    VerifiedLineResponse(
                        product_id=line.product_id,
                        product_name=line.product_name,
                        quantity=line.quantity,
                        price_at_purchase_kobo=line.price_at_purchase_kobo,
                        line_total_kobo=line.line_total_kobo,
                    )
                    for line in order.items
                ],
            )
            for order in breakdown.store_orders
        ],
    )


@router.get("/verify", response_model=CheckoutVerifyResponse)
@verify_limit
async def verify_checkout(
    request: Request,
    reference: str = Query(..., min_length=1, max_length=128),
    current_user: Optional[AuthUser] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_async_db),
    settlement: SettlementService = Depends(get_settlement_service),
):
    """
    Polled by the payment-success page after the gateway redirect.

    Settles the reference if the webhook hasn't already; anonymous callers
    and non-owners only learn whether settlement happened.
    """
    result = await settlement.settle(db, reference, source=SettlementSource.VERIFY)
    response = CheckoutVerifyResponse(
        reference=reference, status=result.outcome.value
    )

    main_order = result.main_order
    if main_order is not None and current_user is not None:
        if current_user.is_admin or main_order.user_id == current_user.user_id:
            response.order_number = main_order.order_number
            response.grand_total_kobo = main_order.grand_total_kobo
            response.payment_status = main_order.payment_status
    return response
