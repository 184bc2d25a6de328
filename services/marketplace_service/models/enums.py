"""Enum definitions for marketplace models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class SubscriptionPlan(str, enum.Enum):
    FREE = "free"
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class DeactivationReason(str, enum.Enum):
    PLAN_LIMIT = "plan_limit"
    OUT_OF_STOCK = "out_of_stock"
    MANUAL = "manual"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in _ORDER_TRANSITIONS[self]


_ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    USSD = "ussd"
    QR = "qr"
    MOBILE_MONEY = "mobile_money"
    TRANSFER = "transfer"

    @classmethod
    def from_channel(cls, channel: str | None) -> "PaymentMethod":
        """Map a Paystack channel name onto our payment method."""
        value = (channel or "").strip().lower()
        if value == "bank":
            return cls.BANK_TRANSFER
        try:
            return cls(value)
        except ValueError:
            return cls.CARD


class PaymentType(str, enum.Enum):
    CHECKOUT = "checkout"
    SUBSCRIPTION = "subscription"


class AuditEventType(str, enum.Enum):
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_SUCCESS = "verification_success"
    VERIFICATION_FAILED = "verification_failed"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_DETECTED = "duplicate_detected"
    ORDER_CREATED = "order_created"
    RATE_LIMIT_HIT = "rate_limit_hit"
    PAYMENT_INITIALIZED = "payment_initialized"
    GATEWAY_ERROR = "gateway_error"
    WEBHOOK_RECEIVED = "webhook_received"
    WEBHOOK_CHARGE_SUCCESS = "webhook_charge_success"
    WEBHOOK_CHARGE_FAILED = "webhook_charge_failed"
    WEBHOOK_RATE_LIMIT_HIT = "webhook_rate_limit_hit"
    WEBHOOK_AMOUNT_MISMATCH = "webhook_amount_mismatch"
    WEBHOOK_INVALID_SIGNATURE = "webhook_invalid_signature"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    DUPLICATE_ORDER_UPDATED = "duplicate_order_updated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"
    INVENTORY_DEBITED = "inventory_debited"
    INVENTORY_RESTORED_SUCCESSFULLY = "inventory_restored_successfully"
    INVENTORY_RESTORATION_FAILED = "inventory_restoration_failed"
    REFUND_PROCESSED = "refund_processed"
    VISIBILITY_ENFORCED = "visibility_enforced"


# Buckets used by suspicious-activity aggregation
AMOUNT_MISMATCH_EVENTS = frozenset(
    {AuditEventType.AMOUNT_MISMATCH, AuditEventType.WEBHOOK_AMOUNT_MISMATCH}
)
RATE_LIMIT_EVENTS = frozenset(
    {AuditEventType.RATE_LIMIT_HIT, AuditEventType.WEBHOOK_RATE_LIMIT_HIT}
)
VERIFICATION_FAILURE_EVENTS = frozenset({AuditEventType.VERIFICATION_FAILED})
WEBHOOK_ERROR_EVENTS = frozenset(
    {
        AuditEventType.WEBHOOK_INVALID_SIGNATURE,
        AuditEventType.WEBHOOK_PROCESSING_FAILED,
    }
)
