"""Background maintenance tasks for the marketplace service."""

from __future__ import annotations

from datetime import datetime

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.subscriptions import SubscriptionService
from services.marketplace_service.services.visibility import (
    PlanCatalog,
    ProductVisibilityEnforcer,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)


async def purge_expired_audit_events(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    now: datetime | None = None,
) -> int:
    """Drop audit records past the retention window."""
    audit = AuditLogger(session_factory)
    return await audit.purge_expired(now)


async def sweep_expired_subscriptions(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    now: datetime | None = None,
) -> int:
    """Downgrade lapsed paid plans to free and re-apply product limits."""
    now = now or utc_now()
    audit = AuditLogger(session_factory)
    plans = PlanCatalog.from_settings()
    subscriptions = SubscriptionService(
        plans, ProductVisibilityEnforcer(plans, audit=audit), audit=audit
    )

    try:
        async with session_factory() as db:
            downgraded = await subscriptions.sweep_expired(db, now)
    finally:
        await audit.stop()

    if downgraded:
        logger.info("Downgraded %d expired store subscription(s)", downgraded)
    return downgraded
