"""Payment settlement: turn a verified Paystack reference into orders.

Both the browser redirect (``/checkout/verify``) and the Paystack webhook
call ``settle()`` for the same reference, often concurrently. The unique
``main_orders.reference`` index decides the race: the caller whose INSERT
lands creates the orders and debits stock in the same transaction, the
other sees an IntegrityError and reports a duplicate.
"""

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.unit_of_work import UnitOfWork
from services.marketplace_service.errors import (
    AmountMismatchError,
    DuplicateProcessingError,
    MarketplaceError,
    NotFoundError,
    TransactionAbortedError,
    ValidationError,
)
from services.marketplace_service.models import (
    AuditEventType,
    MainOrder,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Store,
)
from services.marketplace_service.paystack_client import (
    PaystackClient,
    VerifiedTransaction,
)
from services.marketplace_service.services.amount_verifier import (
    CheckoutBreakdown,
    parse_store_orders,
    verify_checkout_amount,
)
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.inventory_ledger import (
    InventoryLedger,
    RestoreResult,
)
from services.marketplace_service.services.subscriptions import (
    SubscriptionPaymentResult,
    SubscriptionService,
)
from services.marketplace_service.services.visibility import (
    EnforcementResult,
    ProductVisibilityEnforcer,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


class SettlementSource(str, enum.Enum):
    VERIFY = "verify"
    WEBHOOK = "webhook"


class SettlementOutcome(str, enum.Enum):
    SETTLED = "settled"
    DUPLICATE = "duplicate"
    SUBSCRIPTION_APPLIED = "subscription_applied"


@dataclass
class SettlementResult:
    reference: str
    outcome: SettlementOutcome
    main_order: Optional[MainOrder] = None
    subscription: Optional[SubscriptionPaymentResult] = None
    transaction: Optional[VerifiedTransaction] = None

    @property
    def is_duplicate(self) -> bool:
        return self.outcome == SettlementOutcome.DUPLICATE


@dataclass
class CancellationResult:
    main_order: MainOrder
    restore: RestoreResult
    enforcement: list[EnforcementResult] = field(default_factory=list)


async def get_main_order_by_reference(
    db: AsyncSession, reference: str
) -> Optional[MainOrder]:
    result = await db.execute(
        select(MainOrder)
        .where(MainOrder.reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_main_order_by_number(db: AsyncSession, order_number: str) -> MainOrder:
    result = await db.execute(
        select(MainOrder)
        .where(MainOrder.order_number == order_number)
        .execution_options(populate_existing=True)
    )
    main_order = result.scalar_one_or_none()
    if main_order is None:
        raise NotFoundError(f"Order {order_number} not found")
    return main_order


def build_main_order(
    reference: str,
    user_id: str,
    breakdown: CheckoutBreakdown,
    transaction: VerifiedTransaction,
    shipping_info: Optional[dict[str, Any]] = None,
) -> MainOrder:
    """Paid main order with one processing sub order per store."""
    paid_at = transaction.paid_at or utc_now()
    main_order = MainOrder(
        id=uuid.uuid4(),
        order_number=MainOrder.generate_order_number(),
        reference=reference,
        user_id=user_id,
        total_kobo=breakdown.subtotal_kobo,
        delivery_fee_kobo=breakdown.delivery_fee_kobo,
        grand_total_kobo=breakdown.grand_total_kobo,
        status=OrderStatus.PROCESSING,
        payment_status=PaymentStatus.PAID,
        payment_method=PaymentMethod.from_channel(transaction.channel),
        payment_details={
            "gateway_id": transaction.gateway_id,
            "channel": transaction.channel,
            "currency": transaction.currency,
            "fees_kobo": transaction.fees_kobo,
            "amount_kobo": transaction.amount_kobo,
        },
        shipping_info=shipping_info,
        paid_at=paid_at,
    )
    main_order.sub_orders = [
        Order(
            id=uuid.uuid4(),
            store_id=store_order.store_id,
            user_id=user_id,
            reference=reference,
            total_kobo=store_order.total_kobo,
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.PAID,
            paid_at=paid_at,
            items=[
                OrderItem(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    price_at_purchase_kobo=line.price_at_purchase_kobo,
                )
                for line in store_order.items
            ],
        )
        for store_order in breakdown.store_orders
    ]
    return main_order


class SettlementService:
    def __init__(
        self,
        gateway: PaystackClient,
        ledger: InventoryLedger,
        enforcer: ProductVisibilityEnforcer,
        subscriptions: SubscriptionService,
        audit: Optional[AuditLogger] = None,
        *,
        delivery_fee_kobo: int,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.enforcer = enforcer
        self.subscriptions = subscriptions
        self.audit = audit
        self.delivery_fee_kobo = delivery_fee_kobo

    def _audit(self, reference: str, event: AuditEventType, **fields) -> None:
        if self.audit is not None:
            self.audit.log(reference, event, **fields)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(
        self,
        db: AsyncSession,
        reference: str,
        *,
        source: SettlementSource = SettlementSource.VERIFY,
    ) -> SettlementResult:
        """
        Settle a paid reference exactly once.

        Raises:
            GatewayError / VerificationFailedError: from the gateway
            AmountMismatchError: paid amount differs from the authoritative total
            ValidationError: metadata missing or malformed
            InsufficientStockError / UnavailableError / NotFoundError: stock or
                catalog changed between checkout and payment
        """
        existing = await get_main_order_by_reference(db, reference)
        if existing is not None:
            return await self._report_duplicate(existing, source)

        transaction = await self.gateway.verify(reference)
        payment_type = transaction.metadata.get("type") or PaymentType.CHECKOUT.value

        if payment_type == PaymentType.SUBSCRIPTION.value:
            subscription = await self.subscriptions.apply_subscription_payment(
                db, transaction
            )
            return SettlementResult(
                reference=reference,
                outcome=(
                    SettlementOutcome.SUBSCRIPTION_APPLIED
                    if subscription.applied
                    else SettlementOutcome.DUPLICATE
                ),
                subscription=subscription,
                transaction=transaction,
            )
        if payment_type != PaymentType.CHECKOUT.value:
            raise ValidationError(f"Unsupported payment type: {payment_type!r}")

        return await self._settle_checkout(db, reference, transaction, source)

    async def _settle_checkout(
        self,
        db: AsyncSession,
        reference: str,
        transaction: VerifiedTransaction,
        source: SettlementSource,
    ) -> SettlementResult:
        metadata = transaction.metadata
        user_id = metadata.get("user_id")
        if not user_id:
            raise ValidationError("Payment metadata has no user")

        store_orders = parse_store_orders(metadata.get("orders"))

        # Pricing and the debit read live stock, so a concurrent settlement of
        # this reference can make them fail. Its order then decides the outcome.
        try:
            breakdown = await verify_checkout_amount(
                db, store_orders, self.delivery_fee_kobo
            )
            if transaction.amount_kobo != breakdown.grand_total_kobo:
                raise AmountMismatchError(
                    "Payment amount does not match order total.",
                    expected=breakdown.grand_total_kobo,
                    actual=transaction.amount_kobo,
                )

            main_order = build_main_order(
                reference,
                user_id,
                breakdown,
                transaction,
                shipping_info=metadata.get("shipping_info"),
            )
            async with UnitOfWork(db):
                db.add(main_order)
                try:
                    await db.flush()
                except IntegrityError as exc:
                    raise DuplicateProcessingError(
                        f"Reference {reference} already settled"
                    ) from exc
                await self.ledger.debit(db, main_order)
        except MarketplaceError as exc:
            winner = await get_main_order_by_reference(db, reference)
            if winner is None:
                if isinstance(exc, DuplicateProcessingError):
                    raise TransactionAbortedError(
                        f"Could not persist order for {reference}"
                    ) from None
                if isinstance(exc, AmountMismatchError):
                    self._report_mismatch(reference, user_id, exc, source)
                raise
            logger.info(
                "Reference %s settled concurrently, skipping (%s)",
                reference,
                exc.code,
            )
            self._audit(
                reference,
                AuditEventType.DUPLICATE_DETECTED,
                user_id=user_id,
                metadata={"source": source.value, "order_number": winner.order_number},
            )
            return SettlementResult(
                reference=reference,
                outcome=SettlementOutcome.DUPLICATE,
                main_order=winner,
                transaction=transaction,
            )

        logger.info(
            "Created order %s for %s",
            main_order.order_number,
            reference,
            extra={
                "extra_fields": {
                    "reference": reference,
                    "order_number": main_order.order_number,
                    "stores": len(main_order.sub_orders),
                    "grand_total_kobo": main_order.grand_total_kobo,
                    "source": source.value,
                }
            },
        )
        self._audit(
            reference,
            AuditEventType.ORDER_CREATED,
            user_id=user_id,
            amount_kobo=main_order.grand_total_kobo,
            expected_amount_kobo=breakdown.grand_total_kobo,
            metadata={
                "order_number": main_order.order_number,
                "source": source.value,
                "payment_method": main_order.payment_method.value,
                "stores": [str(sub.store_id) for sub in main_order.sub_orders],
            },
        )
        return SettlementResult(
            reference=reference,
            outcome=SettlementOutcome.SETTLED,
            main_order=main_order,
            transaction=transaction,
        )

    def _report_mismatch(
        self,
        reference: str,
        user_id: str,
        exc: AmountMismatchError,
        source: SettlementSource,
    ) -> None:
        logger.warning(
            "Amount mismatch for %s: paid %d, expected %d",
            reference,
            exc.actual,
            exc.expected,
        )
        self._audit(
            reference,
            (
                AuditEventType.WEBHOOK_AMOUNT_MISMATCH
                if source == SettlementSource.WEBHOOK
                else AuditEventType.AMOUNT_MISMATCH
            ),
            user_id=user_id,
            amount_kobo=exc.actual,
            expected_amount_kobo=exc.expected,
        )

    async def _report_duplicate(
        self, main_order: MainOrder, source: SettlementSource
    ) -> SettlementResult:
        """The reference already has orders; they are returned untouched."""
        logger.info(
            "Duplicate settlement for %s (%s)", main_order.reference, source.value
        )
        self._audit(
            main_order.reference,
            AuditEventType.DUPLICATE_ORDER_UPDATED,
            user_id=main_order.user_id,
            metadata={
                "order_number": main_order.order_number,
                "source": source.value,
            },
        )
        return SettlementResult(
            reference=main_order.reference,
            outcome=SettlementOutcome.DUPLICATE,
            main_order=main_order,
        )

    # ------------------------------------------------------------------
    # Failed charges and refunds
    # ------------------------------------------------------------------

    async def record_failed_charge(
        self, db: AsyncSession, reference: str, data: Optional[dict] = None
    ) -> int:
        """Mark unpaid orders for ``reference`` failed. Paid orders are never touched."""
        data = data or {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

        async with UnitOfWork(db):
            mains = await db.execute(
                select(MainOrder).where(
                    MainOrder.reference == reference,
                    MainOrder.payment_status == PaymentStatus.PENDING,
                )
            )
            subs = await db.execute(
                select(Order).where(
                    Order.reference == reference,
                    Order.payment_status == PaymentStatus.PENDING,
                )
            )
            updated = 0
            for row in [*mains.scalars().all(), *subs.scalars().all()]:
                row.payment_status = PaymentStatus.FAILED
                if row.status.can_transition_to(OrderStatus.CANCELLED):
                    row.status = OrderStatus.CANCELLED
                updated += 1

        logger.info("Charge failed for %s, %d order row(s) updated", reference, updated)
        self._audit(
            reference,
            AuditEventType.WEBHOOK_CHARGE_FAILED,
            user_id=metadata.get("user_id"),
            amount_kobo=data.get("amount"),
            error=data.get("gateway_response"),
            metadata={"updated": updated},
        )
        return updated

    async def refund(self, db: AsyncSession, reference: str) -> Optional[CancellationResult]:
        """Apply a processed refund: mark orders refunded, restock, re-enforce."""
        main_order = await get_main_order_by_reference(db, reference)
        if main_order is None:
            logger.warning("Refund for unknown reference %s", reference)
            return None

        async with UnitOfWork(db):
            for row in [main_order, *main_order.sub_orders]:
                row.payment_status = PaymentStatus.REFUNDED
                if row.status.can_transition_to(OrderStatus.CANCELLED):
                    row.status = OrderStatus.CANCELLED
            restore = await self.ledger.restore(db, main_order, reason="refund")

        enforcement = await self._reenforce(db, restore)
        self._audit(
            reference,
            AuditEventType.REFUND_PROCESSED,
            user_id=main_order.user_id,
            amount_kobo=main_order.grand_total_kobo,
            metadata={
                "order_number": main_order.order_number,
                "restock": restore.outcome.value,
            },
        )
        return CancellationResult(
            main_order=main_order, restore=restore, enforcement=enforcement
        )

    # ------------------------------------------------------------------
    # Order status
    # ------------------------------------------------------------------

    async def cancel_order(
        self, db: AsyncSession, main_order: MainOrder, reason: str = "cancelled"
    ) -> CancellationResult:
        """
        Cancel a pending or processing order and put its stock back.

        Raises:
            ValidationError: the order has shipped, been delivered or was
                already cancelled
        """
        if not main_order.status.can_transition_to(OrderStatus.CANCELLED):
            raise ValidationError(
                f"Order {main_order.order_number} cannot be cancelled "
                f"from status {main_order.status.value}"
            )

        async with UnitOfWork(db):
            main_order.status = OrderStatus.CANCELLED
            for sub in main_order.sub_orders:
                if sub.status.can_transition_to(OrderStatus.CANCELLED):
                    sub.status = OrderStatus.CANCELLED
            restore = await self.ledger.restore(db, main_order, reason=reason)

        enforcement = await self._reenforce(db, restore)
        logger.info(
            "Order %s cancelled (%s), restock %s",
            main_order.order_number,
            reason,
            restore.outcome.value,
        )
        return CancellationResult(
            main_order=main_order, restore=restore, enforcement=enforcement
        )

    async def transition_status(
        self,
        db: AsyncSession,
        main_order: MainOrder,
        target: OrderStatus,
        reason: str = "admin",
    ) -> MainOrder:
        target = OrderStatus(target)
        if target == OrderStatus.CANCELLED:
            await self.cancel_order(db, main_order, reason=reason)
            return main_order

        if not main_order.status.can_transition_to(target):
            raise ValidationError(
                f"Cannot move order {main_order.order_number} from "
                f"{main_order.status.value} to {target.value}"
            )
        if target == OrderStatus.PROCESSING and main_order.payment_status != PaymentStatus.PAID:
            raise ValidationError(
                f"Order {main_order.order_number} has not been paid"
            )

        async with UnitOfWork(db):
            main_order.status = target
            for sub in main_order.sub_orders:
                if sub.status.can_transition_to(target):
                    sub.status = target

        logger.info("Order %s moved to %s", main_order.order_number, target.value)
        return main_order

    async def _reenforce(
        self, db: AsyncSession, restore: RestoreResult
    ) -> list[EnforcementResult]:
        results = []
        for store_id in sorted(restore.store_ids, key=str):
            exists = await db.execute(select(Store.id).where(Store.id == store_id))
            if exists.scalar_one_or_none() is None:
                continue
            results.append(await self.enforcer.enforce(db, store_id))
        return results
