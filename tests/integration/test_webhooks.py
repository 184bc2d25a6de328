"""Integration tests for the Paystack webhook endpoint."""

import json

import pytest
from libs.common.rate_limit import ReferenceRateLimiter
from services.marketplace_service.models import MainOrder, OrderStatus, PaymentStatus
from sqlalchemy import func, select
from tests.conftest import audit_events, sign
from tests.factories import (
    MainOrderFactory,
    ProductFactory,
    StoreFactory,
    checkout_metadata,
    checkout_total,
)

WEBHOOK_URL = "/webhooks/paystack"


async def _post_event(client, event: str, data: dict, signature: str = None):
    body = json.dumps({"event": event, "data": data}).encode()
    return await client.post(
        WEBHOOK_URL,
        content=body,
        headers={
            "Content-Type": "application/json",
            "x-paystack-signature": signature if signature is not None else sign(body),
        },
    )


async def _seed_product(db, **overrides):
    store = StoreFactory.create()
    product = ProductFactory.create(store_id=store.id, **overrides)
    db.add_all([store, product])
    await db.commit()
    return product


async def _order_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(MainOrder))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Signature and rate limiting
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_invalid_signature_is_rejected_and_audited(client, audit_logger):
    response = await _post_event(
        client, "charge.success", {"reference": "MKT-W-0"}, signature="deadbeef"
    )

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_SIGNATURE"
    assert await audit_events(audit_logger, "unknown") == ["webhook_invalid_signature"]
    assert await audit_events(audit_logger, "MKT-W-0") == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_missing_signature_is_rejected(client):
    response = await client.post(WEBHOOK_URL, content=b'{"event": "charge.success"}')

    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.integration
@pytest.mark.parametrize(
    "payload",
    [
        [1, 2],
        "charge.success",
        {"event": "charge.success", "data": "MKT-W-X"},
        {"event": ["charge.success"], "data": {"reference": "MKT-W-X"}},
        {"event": "charge.success", "data": {"reference": 12345}},
    ],
)
async def test_signed_but_misshapen_payload_is_rejected(client, fake_paystack, payload):
    body = json.dumps(payload).encode()

    response = await client.post(
        WEBHOOK_URL,
        content=body,
        headers={"Content-Type": "application/json", "x-paystack-signature": sign(body)},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert fake_paystack.requests == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_reference_rate_limit(app, client, audit_logger):
    app.state.reference_limiter = ReferenceRateLimiter("2/minute")
    data = {"reference": "MKT-W-RL"}

    first = await _post_event(client, "charge.dispute", data)
    second = await _post_event(client, "charge.dispute", data)
    third = await _post_event(client, "charge.dispute", data)

    assert first.status_code == 200
    assert second.status_code == 200
    assert third.status_code == 429
    assert third.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert "webhook_rate_limit_hit" in await audit_events(audit_logger, "MKT-W-RL")


# ---------------------------------------------------------------------------
# charge.success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_charge_success_settles_order(client, db_session, fake_paystack, audit_logger):
    towel = await _seed_product(db_session, inventory_quantity=4)
    lines = [(towel, 2)]
    fake_paystack.add_transaction("MKT-W-1", checkout_total(lines), checkout_metadata(lines))

    response = await _post_event(
        client, "charge.success", {"reference": "MKT-W-1", "amount": checkout_total(lines)}
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "settled"}
    await db_session.refresh(towel)
    assert towel.inventory_quantity == 2
    events = await audit_events(audit_logger, "MKT-W-1")
    assert events[:2] == ["webhook_received", "webhook_charge_success"]
    assert "order_created" in events


@pytest.mark.asyncio
@pytest.mark.integration
async def test_redelivered_charge_success_is_duplicate(
    client, db_session, fake_paystack, audit_logger
):
    towel = await _seed_product(db_session, inventory_quantity=4)
    lines = [(towel, 1)]
    fake_paystack.add_transaction("MKT-W-2", checkout_total(lines), checkout_metadata(lines))

    await _post_event(client, "charge.success", {"reference": "MKT-W-2"})
    again = await _post_event(client, "charge.success", {"reference": "MKT-W-2"})

    assert again.json() == {"received": True, "status": "duplicate"}
    assert await _order_count(db_session) == 1
    await db_session.refresh(towel)
    assert towel.inventory_quantity == 3
    assert "duplicate_order_updated" in await audit_events(audit_logger, "MKT-W-2")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_underpaid_charge_is_acknowledged_but_rejected(
    client, db_session, fake_paystack, audit_logger
):
    towel = await _seed_product(db_session)
    lines = [(towel, 1)]
    fake_paystack.add_transaction("MKT-W-3", 100, checkout_metadata(lines))

    response = await _post_event(client, "charge.success", {"reference": "MKT-W-3"})

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "status": "rejected",
        "code": "AMOUNT_MISMATCH",
    }
    assert await _order_count(db_session) == 0
    events = await audit_events(audit_logger, "MKT-W-3")
    assert "webhook_amount_mismatch" in events
    assert events[-1] == "webhook_processing_failed"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_gateway_outage_asks_paystack_to_retry(
    client, db_session, fake_paystack, audit_logger
):
    fake_paystack.fail_status = 503

    response = await _post_event(client, "charge.success", {"reference": "MKT-W-4"})

    assert response.status_code == 502
    assert await _order_count(db_session) == 0
    assert "webhook_processing_failed" in await audit_events(audit_logger, "MKT-W-4")


# ---------------------------------------------------------------------------
# charge.failed / refund.processed / others
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_charge_failed_marks_pending_order(client, db_session):
    towel = await _seed_product(db_session)
    pending = MainOrderFactory.create(
        [(towel, 1)],
        reference="MKT-W-5",
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    )
    db_session.add(pending)
    await db_session.commit()

    response = await _post_event(
        client, "charge.failed", {"reference": "MKT-W-5", "gateway_response": "Declined"}
    )

    assert response.json() == {"received": True, "status": "failed"}
    await db_session.refresh(pending)
    assert pending.payment_status == PaymentStatus.FAILED


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_processed_restocks(client, db_session, audit_logger):
    towel = await _seed_product(db_session, inventory_quantity=1)
    order = MainOrderFactory.create([(towel, 3)], reference="MKT-W-6", debited=True)
    db_session.add(order)
    await db_session.commit()

    response = await _post_event(
        client,
        "refund.processed",
        {"status": "processed", "transaction": {"reference": "MKT-W-6"}},
    )

    assert response.json() == {"received": True, "status": "refunded"}
    await db_session.refresh(towel)
    assert towel.inventory_quantity == 4
    await db_session.refresh(order)
    assert order.payment_status == PaymentStatus.REFUNDED
    assert "refund_processed" in await audit_events(audit_logger, "MKT-W-6")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_refund_for_unknown_order_is_ignored(client):
    response = await _post_event(
        client, "refund.processed", {"transaction": {"reference": "MKT-NOPE"}}
    )

    assert response.json() == {"received": True, "status": "ignored"}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_unhandled_events_are_acknowledged(client, fake_paystack):
    response = await _post_event(client, "transfer.success", {"reference": "TRF-1"})
    empty = await _post_event(client, "charge.success", {})

    assert response.json() == {"received": True}
    assert empty.json() == {"received": True}
    assert fake_paystack.requests == []
