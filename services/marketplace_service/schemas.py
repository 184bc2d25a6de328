"""Pydantic schemas for the marketplace service."""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from services.marketplace_service.models import (
    AuditEventType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    SubscriptionPlan,
    SubscriptionStatus,
)
from services.marketplace_service.services.audit_logger import AlertSeverity

# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================


class CheckoutLine(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(..., gt=0)


class CheckoutStoreOrder(BaseModel):
    store_id: uuid.UUID
    items: list[CheckoutLine] = Field(..., min_length=1)


class ShippingInfo(BaseModel):
    full_name: str = Field(..., max_length=255)
    phone: str = Field(..., max_length=32)
    address: str
    city: str = Field(..., max_length=100)
    state: str = Field(..., max_length=100)


class CheckoutInitializeRequest(BaseModel):
    orders: list[CheckoutStoreOrder] = Field(..., min_length=1)
    shipping_info: Optional[ShippingInfo] = None
    email: Optional[EmailStr] = None
    # Client's own idea of the total; compared, never trusted
    expected_total_kobo: Optional[int] = Field(None, ge=0)


class VerifiedLineResponse(BaseModel):
    product_id: uuid.UUID
    product_name: str
    quantity: int
    price_at_purchase_kobo: int
    line_total_kobo: int


class VerifiedStoreOrderResponse(BaseModel):
    store_id: uuid.UUID
    items: list[VerifiedLineResponse]
    total_kobo: int


class CheckoutInitializeResponse(BaseModel):
    reference: str
    authorization_url: str
    access_code: str
    subtotal_kobo: int
    delivery_fee_kobo: int
    grand_total_kobo: int
    store_orders: list[VerifiedStoreOrderResponse]


class CheckoutVerifyResponse(BaseModel):
    reference: str
    status: str  # settled, duplicate, subscription_applied
    order_number: Optional[str] = None
    grand_total_kobo: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None


# ============================================================================
# ORDER SCHEMAS
# ============================================================================


class OrderItemResponse(BaseModel):
    product_id: uuid.UUID
    product_name: str
    quantity: int
    price_at_purchase_kobo: int

    model_config = ConfigDict(from_attributes=True)


class SubOrderResponse(BaseModel):
    id: uuid.UUID
    store_id: uuid.UUID
    total_kobo: int
    status: OrderStatus
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    inventory_debited_at: Optional[datetime] = None
    inventory_restored_at: Optional[datetime] = None
    items: list[OrderItemResponse] = []

    model_config = ConfigDict(from_attributes=True)


class MainOrderResponse(BaseModel):
    id: uuid.UUID
    order_number: str
    reference: str
    user_id: str
    total_kobo: int
    delivery_fee_kobo: int
    grand_total_kobo: int
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    shipping_info: Optional[dict[str, Any]] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    sub_orders: list[SubOrderResponse] = []

    model_config = ConfigDict(from_attributes=True)


class CancelOrderRequest(BaseModel):
    reason: str = Field("cancelled_by_customer", max_length=255)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=255)


class CancelOrderResponse(BaseModel):
    order: MainOrderResponse
    restock: str
    reactivated_product_ids: list[uuid.UUID] = []


# ============================================================================
# STORE / SUBSCRIPTION SCHEMAS
# ============================================================================


class StoreSubscriptionResponse(BaseModel):
    id: uuid.UUID
    name: str
    subscription_plan: SubscriptionPlan
    product_limit: Optional[int] = None
    subscription_status: SubscriptionStatus
    subscription_start_date: Optional[datetime] = None
    subscription_expiry_date: Optional[datetime] = None
    last_payment_reference: Optional[str] = None
    last_payment_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionInitializeRequest(BaseModel):
    plan: SubscriptionPlan
    email: Optional[EmailStr] = None


class SubscriptionInitializeResponse(BaseModel):
    reference: str
    authorization_url: str
    access_code: str
    amount_kobo: int
    plan: SubscriptionPlan


class AdminSubscriptionUpdate(BaseModel):
    plan: SubscriptionPlan
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None


class EnforcementResponse(BaseModel):
    store_id: uuid.UUID
    activated: int
    deactivated: int
    visible_count: int
    total: int
    limit: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class SubscriptionCheckResponse(BaseModel):
    store: StoreSubscriptionResponse
    downgraded: bool
    enforcement: Optional[EnforcementResponse] = None


class AdminSubscriptionResponse(BaseModel):
    store: StoreSubscriptionResponse
    enforcement: EnforcementResponse


# ============================================================================
# AUDIT SCHEMAS
# ============================================================================


class AuditEventResponse(BaseModel):
    id: uuid.UUID
    reference: str
    user_id: Optional[str] = None
    event: AuditEventType
    amount_kobo: Optional[int] = None
    expected_amount_kobo: Optional[int] = None
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias="event_metadata")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class SuspiciousActivityResponse(BaseModel):
    period: str
    window_hours: int
    amount_mismatches: int
    rate_limit_hits: int
    verification_failures: int
    webhook_errors: int
    total: int


class AlertResponse(BaseModel):
    severity: AlertSeverity
    kind: str
    count: int
    message: str
    recommendation: str

    model_config = ConfigDict(from_attributes=True)
