"""Marketplace catalog models: stores and their products."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.marketplace_service.models.enums import (
    DeactivationReason,
    SubscriptionPlan,
    SubscriptionStatus,
    enum_values,
)
from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============================================================================
# STORE
# ============================================================================


class Store(Base):
    """A seller's storefront and its subscription state."""

    __tablename__ = "stores"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)

    subscription_plan: Mapped[SubscriptionPlan] = mapped_column(
        SAEnum(
            SubscriptionPlan,
            values_callable=enum_values,
            name="subscription_plan_enum",
            validate_strings=True,
        ),
        default=SubscriptionPlan.FREE,
        nullable=False,
    )
    # Mirrors the plan's limit for quick queries; null = unlimited
    product_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(
        SAEnum(
            SubscriptionStatus,
            values_callable=enum_values,
            name="subscription_status_enum",
            validate_strings=True,
        ),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    subscription_start_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_expiry_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    last_payment_reference: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True
    )
    last_payment_amount_kobo: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    last_payment_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    products = relationship("Product", back_populates="store")

    def __repr__(self):
        return f"<Store {self.name} plan={self.subscription_plan}>"


# ============================================================================
# PRODUCT
# ============================================================================


class Product(Base):
    """A sellable product. Price and stock here are authoritative."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    price_kobo: Mapped[int] = mapped_column(BigInteger, nullable=False)
    inventory_quantity: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )

    # Storefront visibility, driven by plan enforcement and stock
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="1", nullable=False
    )
    # Soft delete, terminal
    is_deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default="0", nullable=False
    )
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deactivation_reason: Mapped[Optional[DeactivationReason]] = mapped_column(
        SAEnum(
            DeactivationReason,
            values_callable=enum_values,
            name="product_deactivation_reason_enum",
            validate_strings=True,
        ),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("inventory_quantity >= 0", name="non_negative_stock"),
        CheckConstraint("price_kobo >= 0", name="non_negative_price"),
        Index("ix_products_store_visibility", "store_id", "is_active", "is_deleted"),
    )

    store = relationship("Store", back_populates="products")

    def __repr__(self):
        return f"<Product {self.name} qty={self.inventory_quantity}>"


# ============================================================================
# SUBSCRIPTION PAYMENT
# ============================================================================


class SubscriptionPayment(Base):
    """
    One applied subscription charge.

    ``reference`` is unique and never cleared, so a Paystack reference can
    renew a plan at most once, even after the plan has lapsed.
    """

    __tablename__ = "subscription_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(
        String(128), unique=True, index=True, nullable=False
    )
    store_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("stores.id", ondelete="CASCADE"), index=True, nullable=False
    )
    plan: Mapped[SubscriptionPlan] = mapped_column(
        SAEnum(
            SubscriptionPlan,
            values_callable=enum_values,
            name="subscription_plan_enum",
            validate_strings=True,
        ),
        nullable=False,
    )
    amount_kobo: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    def __repr__(self):
        return f"<SubscriptionPayment {self.reference} plan={self.plan}>"
