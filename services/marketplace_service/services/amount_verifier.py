"""Authoritative checkout pricing.

Client-submitted prices and totals are never trusted: every line is
re-priced from the live ``Product`` row, and availability and stock are
checked before any money moves. Verification is fail-fast, the first
offending line aborts with an error naming the product.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from libs.common.currency import line_total_kobo, sum_kobo
from libs.common.logging import get_logger
from services.marketplace_service.errors import (
    InsufficientStockError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from services.marketplace_service.models import Product
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class LineRequest:
    product_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class StoreOrderRequest:
    store_id: uuid.UUID
    items: tuple[LineRequest, ...]


@dataclass
class VerifiedLine:
    product_id: uuid.UUID
    product_name: str
    quantity: int
    price_at_purchase_kobo: int

    @property
    def line_total_kobo(self) -> int:
        return line_total_kobo(self.price_at_purchase_kobo, self.quantity)


@dataclass
class VerifiedStoreOrder:
    store_id: uuid.UUID
    items: list[VerifiedLine] = field(default_factory=list)

    @property
    def total_kobo(self) -> int:
        return sum_kobo(line.line_total_kobo for line in self.items)


@dataclass
class CheckoutBreakdown:
    store_orders: list[VerifiedStoreOrder]
    delivery_fee_kobo: int

    @property
    def subtotal_kobo(self) -> int:
        return sum_kobo(order.total_kobo for order in self.store_orders)

    @property
    def grand_total_kobo(self) -> int:
        return self.subtotal_kobo + self.delivery_fee_kobo

    def to_metadata(self) -> list[dict[str, Any]]:
        """Minimal order description carried through the gateway metadata."""
        return [
            {
                "store_id": str(order.store_id),
                "items": [
                    {"product_id": str(line.product_id), "quantity": line.quantity}
                    for line in order.items
                ],
            }
            for order in self.store_orders
        ]


def _as_uuid(value: Any, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {label}: {value!r}") from exc


def parse_store_orders(raw: Iterable[Mapping[str, Any]]) -> list[StoreOrderRequest]:
    """Build requests from plain dicts (request bodies or gateway metadata)."""
    if raw is None:
        raise ValidationError("Order list is required")

    parsed = []
    for group in raw:
        if not isinstance(group, Mapping):
            raise ValidationError("Each store order must be an object")
        store_id = _as_uuid(group.get("store_id"), "store id")
        items = group.get("items")
        if not isinstance(items, (list, tuple)):
            raise ValidationError(f"Invalid items for store {store_id}")
        lines = []
        for item in items:
            if not isinstance(item, Mapping):
                raise ValidationError(f"Invalid items for store {store_id}")
            quantity = item.get("quantity")
            if not isinstance(quantity, int) or isinstance(quantity, bool):
                raise ValidationError(f"Invalid quantity for store {store_id}")
            lines.append(
                LineRequest(
                    product_id=_as_uuid(item.get("product_id"), "product id"),
                    quantity=quantity,
                )
            )
        parsed.append(StoreOrderRequest(store_id=store_id, items=tuple(lines)))
    return parsed


async def verify_checkout_amount(
    db: AsyncSession,
    store_orders: Sequence[StoreOrderRequest],
    delivery_fee_kobo: int,
) -> CheckoutBreakdown:
    """
    Re-price a checkout from the catalog.

    Raises:
        ValidationError: empty checkout, empty store order, bad quantity
        NotFoundError: product missing or not sold by that store
        UnavailableError: product deleted or inactive
        InsufficientStockError: requested more than is in stock
    """
    if not store_orders:
        raise ValidationError("Checkout has no orders")
    if not isinstance(delivery_fee_kobo, int) or delivery_fee_kobo < 0:
        raise ValidationError("Delivery fee must be a non-negative kobo amount")

    product_ids = {line.product_id for order in store_orders for line in order.items}
    products: dict[uuid.UUID, Product] = {}
    if product_ids:
        result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
        products = {product.id: product for product in result.scalars().all()}

    # Same product in several lines must fit in stock together
    requested: dict[uuid.UUID, int] = defaultdict(int)
    verified_orders = []

    for order in store_orders:
        if not order.items:
            raise ValidationError(f"Invalid items for store {order.store_id}")

        verified = VerifiedStoreOrder(store_id=order.store_id)
        for line in order.items:
            if line.quantity <= 0:
                raise ValidationError(
                    f"Quantity must be positive for product {line.product_id}"
                )

            product = products.get(line.product_id)
            if product is None or product.store_id != order.store_id:
                raise NotFoundError(f"Product {line.product_id} not found")
            if product.is_deleted:
                raise UnavailableError(
                    f'Product "{product.name}" is no longer available',
                    detail={"product_id": str(product.id)},
                )
            if not product.is_active:
                raise UnavailableError(
                    f'Product "{product.name}" is currently unavailable',
                    detail={"product_id": str(product.id)},
                )

            requested[product.id] += line.quantity
            if requested[product.id] > product.inventory_quantity:
                raise InsufficientStockError(
                    f'Insufficient stock for "{product.name}". '
                    f"Available: {product.inventory_quantity}",
                    product_id=product.id,
                    requested=requested[product.id],
                    available=product.inventory_quantity,
                )

            verified.items.append(
                VerifiedLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=line.quantity,
                    price_at_purchase_kobo=product.price_kobo,
                )
            )
        verified_orders.append(verified)

    breakdown = CheckoutBreakdown(
        store_orders=verified_orders, delivery_fee_kobo=delivery_fee_kobo
    )
    logger.debug(
        "Verified checkout for %d store(s): grand total %d kobo",
        len(verified_orders),
        breakdown.grand_total_kobo,
    )
    return breakdown
