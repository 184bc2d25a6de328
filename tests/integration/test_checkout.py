"""Integration tests for checkout initialization and payment polling."""

import pytest
from tests.conftest import audit_events, auth_headers_for
from tests.factories import ProductFactory, StoreFactory, checkout_metadata, checkout_total


async def _seed_catalog(db, **product_overrides):
    store = StoreFactory.create()
    product = ProductFactory.create(
        store_id=store.id, name="Swim Cap", price_kobo=350000, **product_overrides
    )
    db.add_all([store, product])
    await db.commit()
    return store, product


def _cart(store, *lines, **extra):
    body = {
        "orders": [
            {
                "store_id": str(store.id),
                "items": [
                    {"product_id": str(product.id), "quantity": quantity}
                    for product, quantity in lines
                ],
            }
        ]
    }
    body.update(extra)
    return body


# ---------------------------------------------------------------------------
# POST /checkout/initialize
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_charges_verified_total(
    client, db_session, buyer_headers, fake_paystack
):
    store, cap = await _seed_catalog(db_session, inventory_quantity=5)

    response = await client.post(
        "/checkout/initialize",
        json=_cart(store, (cap, 2), expected_total_kobo=900000),
        headers=buyer_headers,
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["subtotal_kobo"] == 700000
    assert data["delivery_fee_kobo"] == 200000
    assert data["grand_total_kobo"] == 900000
    assert data["store_orders"][0]["items"][0]["line_total_kobo"] == 700000
    assert data["authorization_url"].endswith(data["reference"])

    sent = fake_paystack.initialized[0]
    assert sent["amount"] == 900000
    assert sent["email"] == "buyer-1@test.com"
    assert sent["metadata"]["type"] == "checkout"
    assert sent["metadata"]["user_id"] == "buyer-1"
    assert sent["metadata"]["orders"] == [
        {"store_id": str(store.id), "items": [{"product_id": str(cap.id), "quantity": 2}]}
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_insufficient_stock_never_reaches_gateway(
    client, db_session, buyer_headers, fake_paystack
):
    store = StoreFactory.create()
    p = ProductFactory.create(store_id=store.id, name="P", inventory_quantity=5)
    q = ProductFactory.create(store_id=store.id, name="Q", inventory_quantity=1)
    db_session.add_all([store, p, q])
    await db_session.commit()

    response = await client.post(
        "/checkout/initialize", json=_cart(store, (p, 1), (q, 3)), headers=buyer_headers
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "INSUFFICIENT_STOCK"
    assert body["detail"] == 'Insufficient stock for "Q". Available: 1'
    assert fake_paystack.requests == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_rejects_stale_client_total(
    client, db_session, buyer_headers, fake_paystack, audit_logger
):
    store, cap = await _seed_catalog(db_session)

    response = await client.post(
        "/checkout/initialize",
        json=_cart(store, (cap, 1), expected_total_kobo=100),
        headers=buyer_headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "AMOUNT_MISMATCH"
    assert fake_paystack.requests == []
    await audit_logger.flush()
    activity = await audit_logger.get_suspicious_activity(1)
    assert activity.amount_mismatches == 1


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_unavailable_product(client, db_session, buyer_headers):
    store, cap = await _seed_catalog(db_session, is_active=False)

    response = await client.post(
        "/checkout/initialize", json=_cart(store, (cap, 1)), headers=buyer_headers
    )

    assert response.status_code == 409
    assert response.json()["code"] == "PRODUCT_UNAVAILABLE"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_requires_auth(client, db_session):
    store, cap = await _seed_catalog(db_session)

    response = await client.post("/checkout/initialize", json=_cart(store, (cap, 1)))

    assert response.status_code in (401, 403)


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_validates_quantities(client, db_session, buyer_headers):
    store, cap = await _seed_catalog(db_session)

    response = await client.post(
        "/checkout/initialize", json=_cart(store, (cap, 0)), headers=buyer_headers
    )

    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.integration
async def test_initialize_gateway_down(client, db_session, buyer_headers, fake_paystack):
    store, cap = await _seed_catalog(db_session)
    fake_paystack.timeout = True

    response = await client.post(
        "/checkout/initialize", json=_cart(store, (cap, 1)), headers=buyer_headers
    )

    assert response.status_code == 502
    assert response.json()["code"] == "GATEWAY_ERROR"


# ---------------------------------------------------------------------------
# GET /checkout/verify
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_settles_and_shows_owner_details(
    client, db_session, buyer_headers, fake_paystack, audit_logger
):
    store, cap = await _seed_catalog(db_session, inventory_quantity=3)
    lines = [(cap, 1)]
    fake_paystack.add_transaction("MKT-VER-1", checkout_total(lines), checkout_metadata(lines))

    response = await client.get(
        "/checkout/verify", params={"reference": "MKT-VER-1"}, headers=buyer_headers
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["status"] == "settled"
    assert data["order_number"].startswith("ORD-")
    assert data["grand_total_kobo"] == 550000
    assert data["payment_status"] == "paid"

    await db_session.refresh(cap)
    assert cap.inventory_quantity == 2
    assert "order_created" in await audit_events(audit_logger, "MKT-VER-1")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_hides_details_from_strangers(client, db_session, fake_paystack):
    store, cap = await _seed_catalog(db_session)
    lines = [(cap, 1)]
    fake_paystack.add_transaction("MKT-VER-2", checkout_total(lines), checkout_metadata(lines))

    anonymous = await client.get("/checkout/verify", params={"reference": "MKT-VER-2"})
    stranger = await client.get(
        "/checkout/verify",
        params={"reference": "MKT-VER-2"},
        headers=auth_headers_for("someone-else"),
    )

    assert anonymous.status_code == 200
    assert anonymous.json()["status"] == "settled"
    assert anonymous.json()["order_number"] is None
    assert stranger.json()["status"] == "duplicate"
    assert stranger.json()["order_number"] is None


@pytest.mark.asyncio
@pytest.mark.integration
async def test_verify_failed_payment(client, fake_paystack):
    fake_paystack.add_transaction("MKT-VER-3", 1000, {"type": "checkout"}, status="failed")

    response = await client.get("/checkout/verify", params={"reference": "MKT-VER-3"})

    assert response.status_code == 402
    assert response.json()["code"] == "VERIFICATION_FAILED"
