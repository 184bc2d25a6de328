"""Stock debit and restore for settled and cancelled orders.

Quantities only ever move through conditional UPDATEs
(``SET qty = qty - n WHERE qty >= n``), never read-modify-write, so two
concurrent checkouts can't both take the last unit. Each operation runs in a
``UnitOfWork``; when called from settlement it joins the order-creation
transaction.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.unit_of_work import UnitOfWork
from services.marketplace_service.errors import (
    InsufficientStockError,
    NotFoundError,
    TransactionAbortedError,
)
from services.marketplace_service.models import (
    AuditEventType,
    DeactivationReason,
    MainOrder,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
)
from services.marketplace_service.services.audit_logger import AuditLogger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

AnyOrder = Union[Order, MainOrder]


class RestoreOutcome(str, enum.Enum):
    RESTORED = "restored"
    WRONG_STATE = "wrong_state"
    ALREADY_RESTORED = "already_restored"
    NOT_DEBITED = "not_debited"


@dataclass
class DebitResult:
    reference: str
    debited_order_ids: list[uuid.UUID] = field(default_factory=list)
    skipped_order_ids: list[uuid.UUID] = field(default_factory=list)
    quantities: dict[uuid.UUID, int] = field(default_factory=dict)
    deactivated_product_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass
class RestoreResult:
    reference: str
    outcome: RestoreOutcome
    restored_order_ids: list[uuid.UUID] = field(default_factory=list)
    skipped: dict[uuid.UUID, RestoreOutcome] = field(default_factory=dict)
    quantities: dict[uuid.UUID, int] = field(default_factory=dict)
    reactivated_product_ids: list[uuid.UUID] = field(default_factory=list)
    store_ids: set[uuid.UUID] = field(default_factory=set)

    @property
    def restored(self) -> bool:
        return self.outcome == RestoreOutcome.RESTORED


def _sub_orders(order: AnyOrder) -> list[Order]:
    if isinstance(order, MainOrder):
        return list(order.sub_orders)
    return [order]


def _quantities(orders: list[Order]) -> dict[uuid.UUID, int]:
    totals: dict[uuid.UUID, int] = {}
    for sub in orders:
        for item in sub.items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
    return totals


class InventoryLedger:
    def __init__(self, audit: Optional[AuditLogger] = None):
        self.audit = audit

    # ------------------------------------------------------------------
    # Debit
    # ------------------------------------------------------------------

    async def debit(self, db: AsyncSession, order: AnyOrder) -> DebitResult:
        """
        Take every item of ``order`` out of stock, all or nothing.

        Sub orders already marked debited are skipped, so a replayed call
        never takes stock twice.

        Raises:
            NotFoundError: an item's product no longer exists
            InsufficientStockError: an item can't be covered by current stock
        """
        result = DebitResult(reference=order.reference)
        now = utc_now()

        async with UnitOfWork(db):
            await db.flush()

            to_debit = []
            for sub in _sub_orders(order):
                claimed = await db.execute(
                    update(Order)
                    .where(Order.id == sub.id, Order.inventory_debited_at.is_(None))
                    .values(inventory_debited_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 0:
                    result.skipped_order_ids.append(sub.id)
                    continue
                sub.inventory_debited_at = now
                to_debit.append(sub)
                result.debited_order_ids.append(sub.id)

            applied: dict[uuid.UUID, int] = {}
            try:
                for product_id, quantity in _quantities(to_debit).items():
                    await self._decrement(db, product_id, quantity)
                    applied[product_id] = quantity
            except (NotFoundError, InsufficientStockError):
                await self._compensate(db, applied)
                raise

            result.quantities = applied
            for product_id in applied:
                deactivated = await db.execute(
                    update(Product)
                    .where(
                        Product.id == product_id,
                        Product.inventory_quantity == 0,
                        Product.is_active.is_(True),
                    )
                    .values(
                        is_active=False,
                        deactivated_at=now,
                        deactivation_reason=DeactivationReason.OUT_OF_STOCK,
                    )
                    .execution_options(synchronize_session=False)
                )
                if deactivated.rowcount:
                    result.deactivated_product_ids.append(product_id)

        if result.debited_order_ids:
            logger.info(
                "Debited inventory for %s",
                order.reference,
                extra={
                    "extra_fields": {
                        "reference": order.reference,
                        "products": len(result.quantities),
                        "out_of_stock": [
                            str(pid) for pid in result.deactivated_product_ids
                        ],
                    }
                },
            )
            if self.audit is not None:
                self.audit.log(
                    order.reference,
                    AuditEventType.INVENTORY_DEBITED,
                    user_id=order.user_id,
                    metadata={
                        "order_ids": [str(oid) for oid in result.debited_order_ids],
                        "items": {
                            str(pid): qty for pid, qty in result.quantities.items()
                        },
                        "deactivated": [
                            str(pid) for pid in result.deactivated_product_ids
                        ],
                    },
                )
        return result

    async def _decrement(
        self, db: AsyncSession, product_id: uuid.UUID, quantity: int
    ) -> None:
        updated = await db.execute(
            update(Product)
            .where(Product.id == product_id, Product.inventory_quantity >= quantity)
            .values(inventory_quantity=Product.inventory_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 1:
            return

        current = await db.execute(
            select(Product.name, Product.inventory_quantity).where(
                Product.id == product_id
            )
        )
        row = current.one_or_none()
        if row is None:
            raise NotFoundError(f"Product {product_id} not found")
        raise InsufficientStockError(
            f'Insufficient stock for "{row.name}". Available: {row.inventory_quantity}',
            product_id=product_id,
            requested=quantity,
            available=row.inventory_quantity,
        )

    async def _compensate(self, db: AsyncSession, applied: dict[uuid.UUID, int]):
        for product_id, quantity in applied.items():
            await db.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(inventory_quantity=Product.inventory_quantity + quantity)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(
        self, db: AsyncSession, order: AnyOrder, reason: str = "cancelled"
    ) -> RestoreResult:
        """
        Put a cancelled or refunded order's items back in stock, at most once.

        Ineligible orders return a no-op result instead of raising. A missing
        product aborts the whole restore with ``TransactionAbortedError``.
        """
        reference, user_id = order.reference, order.user_id
        result = RestoreResult(reference=reference, outcome=RestoreOutcome.RESTORED)
        now = utc_now()

        try:
            async with UnitOfWork(db):
                await db.flush()

                to_restore = []
                for sub in _sub_orders(order):
                    outcome = await self._claim_restore(db, sub, now)
                    if outcome is None:
                        to_restore.append(sub)
                        result.restored_order_ids.append(sub.id)
                        result.store_ids.add(sub.store_id)
                    else:
                        result.skipped[sub.id] = outcome

                quantities = _quantities(to_restore)
                for product_id, quantity in quantities.items():
                    updated = await db.execute(
                        update(Product)
                        .where(Product.id == product_id)
                        .values(
                            inventory_quantity=Product.inventory_quantity + quantity
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount == 0:
                        raise TransactionAbortedError(
                            f"Product {product_id} not found while restoring "
                            f"inventory for {order.reference}",
                            detail={"product_id": str(product_id)},
                        )

                for product_id in quantities:
                    reactivated = await db.execute(
                        update(Product)
                        .where(
                            Product.id == product_id,
                            Product.inventory_quantity > 0,
                            Product.is_active.is_(False),
                            Product.is_deleted.is_(False),
                            Product.deactivation_reason
                            == DeactivationReason.OUT_OF_STOCK,
                        )
                        .values(
                            is_active=True,
                            deactivated_at=None,
                            deactivation_reason=None,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if reactivated.rowcount:
                        result.reactivated_product_ids.append(product_id)

                for sub in to_restore:
                    sub.inventory_restored_at = now
                result.quantities = quantities
        except TransactionAbortedError as exc:
            logger.error(
                "Inventory restoration failed for %s: %s",
                reference,
                exc.message,
            )
            if self.audit is not None:
                self.audit.log(
                    reference,
                    AuditEventType.INVENTORY_RESTORATION_FAILED,
                    user_id=user_id,
                    error=exc.message,
                    metadata={"reason": reason},
                )
            raise

        if not result.restored_order_ids:
            # Every sub order was skipped; report the first reason
            result.outcome = next(iter(result.skipped.values()), RestoreOutcome.NOT_DEBITED)
            logger.info(
                "Inventory restore skipped for %s (%s)",
                order.reference,
                result.outcome.value,
            )
            return result

        logger.info(
            "Restored inventory for %s",
            order.reference,
            extra={
                "extra_fields": {
                    "reference": order.reference,
                    "reason": reason,
                    "products": len(result.quantities),
                    "reactivated": [str(pid) for pid in result.reactivated_product_ids],
                }
            },
        )
        if self.audit is not None:
            self.audit.log(
                order.reference,
                AuditEventType.INVENTORY_RESTORED_SUCCESSFULLY,
                user_id=order.user_id,
                metadata={
                    "reason": reason,
                    "order_ids": [str(oid) for oid in result.restored_order_ids],
                    "items": {str(pid): qty for pid, qty in result.quantities.items()},
                    "reactivated": [
                        str(pid) for pid in result.reactivated_product_ids
                    ],
                },
            )
        return result

    async def _claim_restore(
        self, db: AsyncSession, sub: Order, now
    ) -> Optional[RestoreOutcome]:
        """Mark ``sub`` restored if eligible; return the skip reason otherwise."""
        if (
            sub.status != OrderStatus.CANCELLED
            and sub.payment_status != PaymentStatus.REFUNDED
        ):
            return RestoreOutcome.WRONG_STATE
        if sub.inventory_debited_at is None:
            return RestoreOutcome.NOT_DEBITED

        claimed = await db.execute(
            update(Order)
            .where(
                Order.id == sub.id,
                Order.inventory_debited_at.is_not(None),
                Order.inventory_restored_at.is_(None),
            )
            .values(inventory_restored_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            return RestoreOutcome.ALREADY_RESTORED
        return None
