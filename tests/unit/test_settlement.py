"""Unit tests for settlement: verify-or-webhook order creation, refunds, cancels."""

import pytest
from services.marketplace_service.errors import (
    AmountMismatchError,
    InsufficientStockError,
    ValidationError,
    VerificationFailedError,
)
from services.marketplace_service.models import (
    MainOrder,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    SubscriptionPlan,
)
from services.marketplace_service.services import settlement as settlement_module
from services.marketplace_service.services.inventory_ledger import RestoreOutcome
from services.marketplace_service.services.settlement import (
    SettlementOutcome,
    SettlementSource,
    get_main_order_by_reference,
)
from sqlalchemy import func, select
from tests.conftest import audit_events
from tests.factories import (
    MainOrderFactory,
    ProductFactory,
    StoreFactory,
    checkout_metadata,
    checkout_total,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _seed(db, *objects):
    db.add_all(objects)
    await db.commit()


async def _order_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(MainOrder))
    return result.scalar_one()


async def _stock(db, product) -> int:
    await db.refresh(product)
    return product.inventory_quantity


# ---------------------------------------------------------------------------
# Checkout settlement
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_settle_creates_paid_orders_and_debits_stock(
    db_session, settlement, fake_paystack, audit_logger
):
    store_a = StoreFactory.create()
    store_b = StoreFactory.create(owner_user_id="seller-2")
    mug = ProductFactory.create(store_id=store_a.id, price_kobo=250000, inventory_quantity=5)
    cap = ProductFactory.create(store_id=store_b.id, price_kobo=100000, inventory_quantity=2)
    await _seed(db_session, store_a, store_b, mug, cap)
    lines = [(mug, 2), (cap, 1)]
    fake_paystack.add_transaction(
        "MKT-S-1",
        checkout_total(lines),
        checkout_metadata(lines, shipping_info={"city": "Lagos"}),
        channel="bank",
    )

    result = await settlement.settle(db_session, "MKT-S-1")

    assert result.outcome == SettlementOutcome.SETTLED
    main_order = await get_main_order_by_reference(db_session, "MKT-S-1")
    assert main_order.order_number.startswith("ORD-")
    assert main_order.user_id == "buyer-1"
    assert main_order.total_kobo == 600000
    assert main_order.delivery_fee_kobo == 200000
    assert main_order.grand_total_kobo == 800000
    assert main_order.status == OrderStatus.PROCESSING
    assert main_order.payment_status == PaymentStatus.PAID
    assert main_order.payment_method == PaymentMethod.BANK_TRANSFER
    assert main_order.shipping_info == {"city": "Lagos"}
    assert {sub.store_id for sub in main_order.sub_orders} == {store_a.id, store_b.id}
    assert all(sub.inventory_debited_at is not None for sub in main_order.sub_orders)

    assert await _stock(db_session, mug) == 3
    assert await _stock(db_session, cap) == 1

    events = await audit_events(audit_logger, "MKT-S-1")
    assert "inventory_debited" in events
    assert events[-1] == "order_created"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_settlement_is_a_duplicate(
    db_session, settlement, fake_paystack, audit_logger
):
    """Poll after webhook: no second order, no second debit."""
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=5)
    await _seed(db_session, store, mug)
    lines = [(mug, 2)]
    fake_paystack.add_transaction("MKT-S-2", checkout_total(lines), checkout_metadata(lines))

    first = await settlement.settle(db_session, "MKT-S-2", source=SettlementSource.WEBHOOK)
    second = await settlement.settle(db_session, "MKT-S-2", source=SettlementSource.VERIFY)

    assert first.outcome == SettlementOutcome.SETTLED
    assert second.is_duplicate
    assert second.main_order.order_number == first.main_order.order_number
    assert await _order_count(db_session) == 1
    assert await _stock(db_session, mug) == 3
    # Only the first call asked the gateway
    assert len(fake_paystack.calls("/transaction/verify/")) == 1
    assert "duplicate_order_updated" in await audit_events(audit_logger, "MKT-S-2")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_duplicate_leaves_existing_orders_untouched(
    db_session, settlement, fake_paystack, audit_logger
):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=4)
    order = MainOrderFactory.create(
        [(mug, 1)], status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING
    )
    await _seed(db_session, store, mug, order)

    result = await settlement.settle(
        db_session, order.reference, source=SettlementSource.WEBHOOK
    )

    assert result.is_duplicate
    await db_session.refresh(order)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.status == OrderStatus.PENDING
    assert order.sub_orders[0].inventory_debited_at is None
    assert await _stock(db_session, mug) == 4
    assert fake_paystack.calls("/transaction/verify/") == []
    assert "duplicate_order_updated" in await audit_events(audit_logger, order.reference)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_losing_a_concurrent_settlement_reports_duplicate(
    db_session, settlement, fake_paystack, audit_logger, monkeypatch
):
    """The other caller's insert lands between our lookup and our insert."""
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=5)
    winner = MainOrderFactory.create([(mug, 1)], reference="MKT-RACE", debited=True)
    await _seed(db_session, store, mug, winner)
    lines = [(mug, 1)]
    fake_paystack.add_transaction("MKT-RACE", checkout_total(lines), checkout_metadata(lines))

    real_lookup = settlement_module.get_main_order_by_reference
    lookups = []

    async def stale_first_lookup(db, reference):
        lookups.append(reference)
        if len(lookups) == 1:
            return None
        return await real_lookup(db, reference)

    monkeypatch.setattr(
        settlement_module, "get_main_order_by_reference", stale_first_lookup
    )

    result = await settlement.settle(db_session, "MKT-RACE")

    assert result.is_duplicate
    assert result.main_order.order_number == winner.order_number
    assert await _order_count(db_session) == 1
    assert await _stock(db_session, mug) == 5
    assert "duplicate_detected" in await audit_events(audit_logger, "MKT-RACE")


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize("stock", [2, 3])
async def test_poll_after_webhook_took_the_stock_reports_duplicate(
    session_factory, db_session, settlement, fake_paystack, audit_logger, monkeypatch, stock
):
    """The webhook settles and debits while the poll waits on the gateway."""
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=stock)
    await _seed(db_session, store, mug)
    lines = [(mug, 2)]
    fake_paystack.add_transaction("MKT-LATE", checkout_total(lines), checkout_metadata(lines))

    real_verify = settlement.gateway.verify
    webhook = {}

    async def verify_while_webhook_settles(reference, **kwargs):
        monkeypatch.setattr(settlement.gateway, "verify", real_verify)
        async with session_factory() as webhook_db:
            webhook["result"] = await settlement.settle(
                webhook_db, reference, source=SettlementSource.WEBHOOK
            )
        return await real_verify(reference, **kwargs)

    monkeypatch.setattr(settlement.gateway, "verify", verify_while_webhook_settles)

    async with session_factory() as poll_db:
        poll = await settlement.settle(poll_db, "MKT-LATE")

    assert webhook["result"].outcome == SettlementOutcome.SETTLED
    assert poll.is_duplicate
    assert poll.main_order.order_number == webhook["result"].main_order.order_number
    assert await _order_count(db_session) == 1
    assert await _stock(db_session, mug) == stock - 2
    events = await audit_events(audit_logger, "MKT-LATE")
    assert events.count("inventory_debited") == 1
    assert "duplicate_detected" in events
    assert "amount_mismatch" not in events


@pytest.mark.asyncio
@pytest.mark.unit
async def test_underpayment_creates_nothing(db_session, settlement, fake_paystack, audit_logger):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=5)
    await _seed(db_session, store, mug)
    lines = [(mug, 2)]
    fake_paystack.add_transaction("MKT-S-3", 100, checkout_metadata(lines))

    with pytest.raises(AmountMismatchError) as exc_info:
        await settlement.settle(db_session, "MKT-S-3", source=SettlementSource.WEBHOOK)

    assert exc_info.value.expected == checkout_total(lines)
    assert await _order_count(db_session) == 0
    assert await _stock(db_session, mug) == 5
    assert "webhook_amount_mismatch" in await audit_events(audit_logger, "MKT-S-3")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stock_sold_out_before_settlement(db_session, settlement, fake_paystack):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=1)
    await _seed(db_session, store, mug)
    lines = [(mug, 2)]
    fake_paystack.add_transaction("MKT-S-4", checkout_total(lines), checkout_metadata(lines))

    with pytest.raises(InsufficientStockError):
        await settlement.settle(db_session, "MKT-S-4")

    assert await _order_count(db_session) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payment_is_not_settled(db_session, settlement, fake_paystack):
    fake_paystack.add_transaction("MKT-S-5", 1000, {"type": "checkout"}, status="failed")

    with pytest.raises(VerificationFailedError):
        await settlement.settle(db_session, "MKT-S-5")

    assert await _order_count(db_session) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_metadata_without_user_or_with_unknown_type(db_session, settlement, fake_paystack):
    fake_paystack.add_transaction("MKT-S-6", 1000, {"type": "checkout", "orders": []})
    fake_paystack.add_transaction("MKT-S-7", 1000, {"type": "donation"})

    with pytest.raises(ValidationError):
        await settlement.settle(db_session, "MKT-S-6")
    with pytest.raises(ValidationError):
        await settlement.settle(db_session, "MKT-S-7")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_subscription_reference_applies_plan(db_session, settlement, fake_paystack):
    store = StoreFactory.create()
    await _seed(db_session, store)
    fake_paystack.add_transaction(
        "MKT-SUB-1",
        500000,
        {"type": "subscription", "store_id": str(store.id), "plan": "basic"},
    )

    result = await settlement.settle(db_session, "MKT-SUB-1")
    replay = await settlement.settle(db_session, "MKT-SUB-1")

    assert result.outcome == SettlementOutcome.SUBSCRIPTION_APPLIED
    assert replay.is_duplicate
    await db_session.refresh(store)
    assert store.subscription_plan == SubscriptionPlan.BASIC


# ---------------------------------------------------------------------------
# Cancellation and refunds
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_restores_stock_and_reactivates(
    db_session, settlement, fake_paystack, audit_logger
):
    """Buying the last unit hides the product; cancelling brings it back."""
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=1)
    await _seed(db_session, store, mug)
    lines = [(mug, 1)]
    fake_paystack.add_transaction("MKT-C-1", checkout_total(lines), checkout_metadata(lines))
    settled = await settlement.settle(db_session, "MKT-C-1")

    await db_session.refresh(mug)
    assert mug.is_active is False

    result = await settlement.cancel_order(
        db_session, settled.main_order, reason="cancelled_by_customer"
    )

    assert result.restore.outcome == RestoreOutcome.RESTORED
    assert result.restore.reactivated_product_ids == [mug.id]
    assert result.main_order.status == OrderStatus.CANCELLED
    await db_session.refresh(mug)
    assert mug.inventory_quantity == 1
    assert mug.is_active is True
    assert len(result.enforcement) == 1
    assert "inventory_restored_successfully" in await audit_events(
        audit_logger, "MKT-C-1"
    )


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_is_refused_after_shipping(db_session, settlement):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id)
    order = MainOrderFactory.create([(mug, 1)], status=OrderStatus.SHIPPED, debited=True)
    await _seed(db_session, store, mug, order)

    with pytest.raises(ValidationError):
        await settlement.cancel_order(db_session, order)

    assert await _stock(db_session, mug) == 10


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_marks_refunded_and_restocks(
    db_session, settlement, fake_paystack, audit_logger
):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id, inventory_quantity=4)
    await _seed(db_session, store, mug)
    lines = [(mug, 3)]
    fake_paystack.add_transaction("MKT-R-1", checkout_total(lines), checkout_metadata(lines))
    await settlement.settle(db_session, "MKT-R-1")

    result = await settlement.refund(db_session, "MKT-R-1")
    again = await settlement.refund(db_session, "MKT-R-1")

    assert result.main_order.payment_status == PaymentStatus.REFUNDED
    assert result.main_order.status == OrderStatus.CANCELLED
    assert result.restore.restored
    assert again.restore.outcome == RestoreOutcome.ALREADY_RESTORED
    assert await _stock(db_session, mug) == 4
    assert "refund_processed" in await audit_events(audit_logger, "MKT-R-1")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_refund_for_unknown_reference(db_session, settlement):
    assert await settlement.refund(db_session, "MKT-NOPE") is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_charge_only_touches_unpaid_orders(db_session, settlement, audit_logger):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id)
    pending = MainOrderFactory.create(
        [(mug, 1)], status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING
    )
    paid = MainOrderFactory.create([(mug, 1)])
    await _seed(db_session, store, mug, pending, paid)

    updated = await settlement.record_failed_charge(
        db_session, pending.reference, {"amount": 150000, "gateway_response": "Declined"}
    )
    untouched = await settlement.record_failed_charge(db_session, paid.reference)

    assert updated == 2
    assert untouched == 0
    await db_session.refresh(pending)
    await db_session.refresh(paid)
    assert pending.payment_status == PaymentStatus.FAILED
    assert pending.status == OrderStatus.CANCELLED
    assert paid.payment_status == PaymentStatus.PAID
    assert "webhook_charge_failed" in await audit_events(audit_logger, pending.reference)


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_status_moves_forward_only(db_session, settlement):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id)
    order = MainOrderFactory.create([(mug, 1)])
    await _seed(db_session, store, mug, order)

    await settlement.transition_status(db_session, order, OrderStatus.SHIPPED)
    await settlement.transition_status(db_session, order, OrderStatus.DELIVERED)

    await db_session.refresh(order)
    assert order.status == OrderStatus.DELIVERED
    assert order.sub_orders[0].status == OrderStatus.DELIVERED
    with pytest.raises(ValidationError):
        await settlement.transition_status(db_session, order, OrderStatus.PROCESSING)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unpaid_order_cannot_start_processing(db_session, settlement):
    store = StoreFactory.create()
    mug = ProductFactory.create(store_id=store.id)
    order = MainOrderFactory.create(
        [(mug, 1)], status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING
    )
    await _seed(db_session, store, mug, order)

    with pytest.raises(ValidationError):
        await settlement.transition_status(db_session, order, OrderStatus.PROCESSING)
