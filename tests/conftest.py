import hashlib
import hmac
import json
from typing import AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import get_settings
from libs.db.base import Base
from services.marketplace_service import models as _marketplace_models  # noqa: F401
from services.marketplace_service.paystack_client import PaystackClient
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.inventory_ledger import InventoryLedger
from services.marketplace_service.services.settlement import SettlementService
from services.marketplace_service.services.subscriptions import SubscriptionService
from services.marketplace_service.services.visibility import (
    PlanCatalog,
    ProductVisibilityEnforcer,
)

settings = get_settings()

PAYSTACK_BASE_URL = "https://api.paystack.test"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    A fresh SQLite file per test.

    A file (not :memory:) so the audit writer's own sessions see the same
    data as the test session.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def audit_logger(session_factory) -> AsyncGenerator[AuditLogger, None]:
    audit = AuditLogger(session_factory)
    yield audit
    await audit.stop()


async def audit_events(audit: AuditLogger, reference: str) -> list[str]:
    """Event names recorded for ``reference``, oldest first."""
    await audit.flush()
    trail = await audit.get_audit_trail(reference)
    return [record.event.value for record in reversed(trail)]


# ---------------------------------------------------------------------------
# Paystack
# ---------------------------------------------------------------------------


class FakePaystack:
    """In-memory Paystack Transaction API behind an httpx.MockTransport."""

    def __init__(self):
        self.transactions: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.initialized: list[dict] = []
        self.fail_status: Optional[int] = None
        self.timeout = False

    def add_transaction(
        self,
        reference: str,
        amount_kobo: int,
        metadata: Optional[dict] = None,
        *,
        status: str = "success",
        channel: str = "card",
    ) -> dict:
        data = {
            "id": 4099260516 + len(self.transactions),
            "reference": reference,
            "status": status,
            "amount": amount_kobo,
            "currency": "NGN",
            "channel": channel,
            "fees": 1500,
            "paid_at": "2026-10-19T09:15:00.000Z",
            "gateway_response": "Successful" if status == "success" else "Declined",
            # Paystack echoes metadata back the way it was sent
            "metadata": json.dumps(metadata or {}),
        }
        self.transactions[reference] = data
        return data

    def calls(self, path_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(path_prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_status is not None:
            return httpx.Response(
                self.fail_status, json={"status": False, "message": "Upstream error"}
            )

        if request.method == "POST" and request.url.path == "/transaction/initialize":
            payload = json.loads(request.content)
            self.initialized.append(payload)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.test/{payload['reference']}",
                        "access_code": f"ac_{payload['reference'][-8:]}",
                        "reference": payload["reference"],
                    },
                },
            )

        if request.method == "GET" and request.url.path.startswith("/transaction/verify/"):
            reference = request.url.path.rsplit("/", 1)[-1]
            data = self.transactions.get(reference)
            if data is None:
                return httpx.Response(
                    404,
                    json={"status": False, "message": "Transaction reference not found"},
                )
            return httpx.Response(
                200, json={"status": True, "message": "Verification successful", "data": data}
            )

        return httpx.Response(404, json={"status": False, "message": "Not found"})


@pytest.fixture
def fake_paystack() -> FakePaystack:
    return FakePaystack()


@pytest.fixture
def gateway(fake_paystack, audit_logger) -> PaystackClient:
    return PaystackClient(
        secret_key=settings.PAYSTACK_SECRET_KEY,
        base_url=PAYSTACK_BASE_URL,
        transport=httpx.MockTransport(fake_paystack.handler),
        audit=audit_logger,
    )


def sign(body: bytes, secret: str = None) -> str:
    """x-paystack-signature for a raw webhook body."""
    key = (secret or settings.PAYSTACK_SECRET_KEY).encode("utf-8")
    return hmac.new(key, body, hashlib.sha512).hexdigest()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def plans() -> PlanCatalog:
    return PlanCatalog.from_settings()


@pytest.fixture
def enforcer(plans, audit_logger) -> ProductVisibilityEnforcer:
    return ProductVisibilityEnforcer(plans, audit=audit_logger)


@pytest.fixture
def ledger(audit_logger) -> InventoryLedger:
    return InventoryLedger(audit=audit_logger)


@pytest.fixture
def subscriptions(plans, enforcer, audit_logger) -> SubscriptionService:
    return SubscriptionService(plans, enforcer, audit=audit_logger)


@pytest.fixture
def settlement(gateway, ledger, enforcer, subscriptions, audit_logger) -> SettlementService:
    return SettlementService(
        gateway,
        ledger,
        enforcer,
        subscriptions,
        audit=audit_logger,
        delivery_fee_kobo=settings.DELIVERY_FEE_KOBO,
    )


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def make_token(user_id: str, role: str = "authenticated", email: str = None) -> str:
    claims = {"sub": user_id, "role": role}
    if email is not None:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers_for(user_id: str, role: str = "authenticated", email: str = None) -> dict:
    token = make_token(user_id, role=role, email=email or f"{user_id}@test.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer_headers() -> dict:
    return auth_headers_for("buyer-1")


@pytest.fixture
def seller_headers() -> dict:
    return auth_headers_for("seller-1")


@pytest.fixture
def admin_headers() -> dict:
    return auth_headers_for("admin-1", role="admin")


@pytest.fixture
def app(audit_logger, gateway, session_factory):
    from libs.db.session import get_async_db
    from services.marketplace_service.app.main import create_app
    from services.marketplace_service.dependencies import get_paystack_client

    application = create_app(audit_logger=audit_logger)

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_async_db] = _get_test_db
    application.dependency_overrides[get_paystack_client] = lambda: gateway
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient against the marketplace app with test DB and gateway.
    """
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
