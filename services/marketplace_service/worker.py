"""ARQ worker for audit retention and subscription expiry."""

from arq import cron
from libs.common.arq_config import get_redis_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)


async def task_purge_audit_events(ctx: dict):
    from services.marketplace_service.tasks import purge_expired_audit_events

    logger.info("Running: purge_expired_audit_events")
    await purge_expired_audit_events()


async def task_sweep_expired_subscriptions(ctx: dict):
    from services.marketplace_service.tasks import sweep_expired_subscriptions

    logger.info("Running: sweep_expired_subscriptions")
    await sweep_expired_subscriptions()


class WorkerSettings:
    redis_settings = get_redis_settings()

    functions = [
        task_purge_audit_events,
        task_sweep_expired_subscriptions,
    ]

    cron_jobs = [
        cron(task_purge_audit_events, hour={3}, minute={0}),
        cron(task_sweep_expired_subscriptions, minute={7}, run_at_startup=True),
    ]
