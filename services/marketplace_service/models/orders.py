"""Marketplace order models: cross-store main orders and per-store sub orders."""

import random
import string
import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.marketplace_service.models.enums import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    enum_values,
)
from sqlalchemy import JSON, BigInteger, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship


def _order_status_column(name: str):
    return mapped_column(
        SAEnum(
            OrderStatus,
            values_callable=enum_values,
            name=name,
            validate_strings=True,
        ),
        default=OrderStatus.PENDING,
        nullable=False,
    )


def _payment_status_column(name: str):
    return mapped_column(
        SAEnum(
            PaymentStatus,
            values_callable=enum_values,
            name=name,
            validate_strings=True,
        ),
        default=PaymentStatus.PENDING,
        nullable=False,
    )


# ============================================================================
# MAIN ORDER
# ============================================================================


class MainOrder(Base):
    """One checkout, spanning one sub order per store.

    ``reference`` is unique: inserting the main order is the atomic
    check-and-set that makes settlement of a reference happen at most once.
    """

    __tablename__ = "main_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(
        String(32), unique=True, index=True, nullable=False
    )
    reference: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)

    total_kobo: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delivery_fee_kobo: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )
    grand_total_kobo: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[OrderStatus] = _order_status_column("main_order_status_enum")
    payment_status: Mapped[PaymentStatus] = _payment_status_column(
        "main_order_payment_status_enum"
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(
            PaymentMethod,
            values_callable=enum_values,
            name="payment_method_enum",
            validate_strings=True,
        ),
        default=PaymentMethod.CARD,
        nullable=False,
    )
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    shipping_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "grand_total_kobo = total_kobo + delivery_fee_kobo",
            name="grand_total_balances",
        ),
    )

    sub_orders = relationship(
        "Order",
        back_populates="main_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @staticmethod
    def generate_order_number() -> str:
        suffix = "".join(random.choices(string.digits, k=9))
        return f"ORD-{suffix}"

    def __repr__(self):
        return f"<MainOrder {self.order_number} ref={self.reference}>"


# ============================================================================
# SUB ORDER
# ============================================================================


class Order(Base):
    """The part of a checkout fulfilled by a single store."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    main_order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("main_orders.id", ondelete="CASCADE"), nullable=False
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("stores.id"), index=True, nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    reference: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    total_kobo: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[OrderStatus] = _order_status_column("order_status_enum")
    payment_status: Mapped[PaymentStatus] = _payment_status_column(
        "order_payment_status_enum"
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Ledger markers: each flips once, set inside the stock transaction
    inventory_debited_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    inventory_restored_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    main_order = relationship("MainOrder", back_populates="sub_orders")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Order store={self.store_id} status={self.status}>"


class OrderItem(Base):
    """Order line with the price snapshot taken at settlement."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("products.id"), nullable=False
    )
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_at_purchase_kobo: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)

    order = relationship("Order", back_populates="items")

    @property
    def line_total_kobo(self) -> int:
        return self.price_at_purchase_kobo * self.quantity

    def __repr__(self):
        return f"<OrderItem {self.product_name} x{self.quantity}>"
