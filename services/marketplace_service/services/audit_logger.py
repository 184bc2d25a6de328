"""Append-only payment audit trail.

Writes are fire-and-forget: ``log()`` puts a record on a bounded queue and
returns immediately; a background task drains the queue, writing each record
in its own session so an audit failure can never roll back (or slow down)
the business transaction that produced it.

Reads (trail, suspicious-activity aggregation, alerts) go straight to the
database and degrade to empty results on failure.
"""

import asyncio
import contextlib
import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.marketplace_service.models import (
    AMOUNT_MISMATCH_EVENTS,
    RATE_LIMIT_EVENTS,
    VERIFICATION_FAILURE_EVENTS,
    WEBHOOK_ERROR_EVENTS,
    AuditEventType,
    PaymentAuditEvent,
)
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = get_logger(__name__)

# Per-hour thresholds used by check_for_alerts()
AMOUNT_MISMATCHES_PER_HOUR = 5
RATE_LIMIT_HITS_PER_HOUR = 20
VERIFICATION_FAILURES_PER_HOUR = 10
WEBHOOK_ERRORS_PER_HOUR = 10

FAILURE_EVENTS = sorted(VERIFICATION_FAILURE_EVENTS | AMOUNT_MISMATCH_EVENTS)


@dataclass
class AuditRecord:
    reference: str
    event: AuditEventType
    user_id: Optional[str] = None
    amount_kobo: Optional[int] = None
    expected_amount_kobo: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class SuspiciousActivity:
    window_hours: int
    amount_mismatches: int = 0
    rate_limit_hits: int = 0
    verification_failures: int = 0
    webhook_errors: int = 0

    @property
    def total(self) -> int:
        return (
            self.amount_mismatches
            + self.rate_limit_hits
            + self.verification_failures
            + self.webhook_errors
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period"] = f"Last {self.window_hours} hours"
        data["total"] = self.total
        return data


class AlertSeverity(str, enum.Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


@dataclass
class Alert:
    severity: AlertSeverity
    kind: str
    count: int
    message: str
    recommendation: str


class AuditLogger:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        maxsize: Optional[int] = None,
        retention_days: Optional[int] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory or AsyncSessionLocal
        self._maxsize = maxsize if maxsize is not None else settings.AUDIT_QUEUE_MAXSIZE
        self.retention_days = (
            retention_days
            if retention_days is not None
            else settings.AUDIT_RETENTION_DAYS
        )
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._worker = asyncio.get_running_loop().create_task(
            self._drain(self._queue), name="payment-audit-writer"
        )

    async def start(self) -> None:
        self._ensure_worker()

    async def flush(self) -> None:
        """Wait until every queued record has been written (or failed)."""
        if self._queue is not None and self._worker is not None:
            await self._queue.join()

    async def stop(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None

    async def _drain(self, queue: asyncio.Queue) -> None:
        while True:
            record = await queue.get()
            try:
                await self._write(record)
            except Exception:
                logger.exception(
                    "Failed to write audit record",
                    extra={
                        "extra_fields": {
                            "reference": record.reference,
                            "event": record.event.value,
                        }
                    },
                )
            finally:
                queue.task_done()

    async def _write(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            session.add(
                PaymentAuditEvent(
                    reference=record.reference,
                    user_id=record.user_id,
                    event=record.event,
                    amount_kobo=record.amount_kobo,
                    expected_amount_kobo=record.expected_amount_kobo,
                    event_metadata=record.metadata,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    error=record.error,
                    timestamp=record.timestamp,
                )
            )
            await session.commit()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, record: AuditRecord) -> None:
        """Queue a record for writing. Never raises."""
        try:
            self._ensure_worker()
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue full, dropping %s for %s",
                record.event.value,
                record.reference,
            )
        except Exception:
            logger.exception("Failed to queue audit record for %s", record.reference)

    def log(
        self,
        reference: str,
        event: AuditEventType,
        *,
        user_id: Optional[str] = None,
        amount_kobo: Optional[int] = None,
        expected_amount_kobo: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self.append(
            AuditRecord(
                reference=reference,
                event=event,
                user_id=str(user_id) if user_id is not None else None,
                amount_kobo=amount_kobo,
                expected_amount_kobo=expected_amount_kobo,
                metadata=metadata,
                ip_address=ip_address,
                user_agent=user_agent,
                error=error,
            )
        )

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete records older than the retention window. Returns rows removed."""
        cutoff = (now or utc_now()) - timedelta(days=self.retention_days)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(PaymentAuditEvent).where(PaymentAuditEvent.timestamp < cutoff)
            )
            await session.commit()
        removed = result.rowcount or 0
        logger.info(
            "Purged %d audit records older than %s", removed, cutoff.isoformat()
        )
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_audit_trail(self, reference: str) -> list[PaymentAuditEvent]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentAuditEvent)
                    .where(PaymentAuditEvent.reference == reference)
                    .order_by(
                        PaymentAuditEvent.timestamp.desc(),
                        PaymentAuditEvent.id.desc(),
                    )
                )
                return list(result.scalars().all())
        except Exception:
            logger.exception("Failed to retrieve audit trail for %s", reference)
            return []

    async def get_recent_failures(self, limit: int = 10) -> list[PaymentAuditEvent]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentAuditEvent)
                    .where(PaymentAuditEvent.event.in_(FAILURE_EVENTS))
                    .order_by(PaymentAuditEvent.timestamp.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())
        except Exception:
            logger.exception("Failed to retrieve recent payment failures")
            return []

    async def get_suspicious_activity(
        self, window_hours: int = 24, *, now: Optional[datetime] = None
    ) -> SuspiciousActivity:
        activity = SuspiciousActivity(window_hours=window_hours)
        since = (now or utc_now()) - timedelta(hours=window_hours)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(PaymentAuditEvent.event, func.count())
                    .where(PaymentAuditEvent.timestamp >= since)
                    .group_by(PaymentAuditEvent.event)
                )
                counts = {event: count for event, count in result.all()}
        except Exception:
            logger.exception("Failed to aggregate suspicious payment activity")
            return activity

        def bucket(events) -> int:
            return sum(counts.get(event, 0) for event in events)

        activity.amount_mismatches = bucket(AMOUNT_MISMATCH_EVENTS)
        activity.rate_limit_hits = bucket(RATE_LIMIT_EVENTS)
        activity.verification_failures = bucket(VERIFICATION_FAILURE_EVENTS)
        activity.webhook_errors = bucket(WEBHOOK_ERROR_EVENTS)
        return activity

    async def check_for_alerts(self, *, now: Optional[datetime] = None) -> list[Alert]:
        activity = await self.get_suspicious_activity(1, now=now)
        alerts: list[Alert] = []

        if activity.amount_mismatches >= AMOUNT_MISMATCHES_PER_HOUR:
            alerts.append(
                Alert(
                    severity=AlertSeverity.CRITICAL,
                    kind="amount_mismatch",
                    count=activity.amount_mismatches,
                    message=f"{activity.amount_mismatches} amount mismatches in the last hour",
                    recommendation="Investigate possible price manipulation attempts",
                )
            )
        if activity.rate_limit_hits >= RATE_LIMIT_HITS_PER_HOUR:
            alerts.append(
                Alert(
                    severity=AlertSeverity.WARNING,
                    kind="rate_limit",
                    count=activity.rate_limit_hits,
                    message=f"{activity.rate_limit_hits} rate limit hits in the last hour",
                    recommendation="Possible automated attack or bot activity",
                )
            )
        if activity.verification_failures >= VERIFICATION_FAILURES_PER_HOUR:
            alerts.append(
                Alert(
                    severity=AlertSeverity.WARNING,
                    kind="verification_failure",
                    count=activity.verification_failures,
                    message=f"{activity.verification_failures} verification failures in the last hour",
                    recommendation="Check Paystack integration and network connectivity",
                )
            )
        if activity.webhook_errors >= WEBHOOK_ERRORS_PER_HOUR:
            alerts.append(
                Alert(
                    severity=AlertSeverity.WARNING,
                    kind="webhook_error",
                    count=activity.webhook_errors,
                    message=f"{activity.webhook_errors} webhook errors in the last hour",
                    recommendation="Check webhook secret configuration and delivery logs",
                )
            )

        for alert in alerts:
            logger.warning(
                "Payment alert: %s",
                alert.message,
                extra={
                    "extra_fields": {
                        "severity": alert.severity.value,
                        "kind": alert.kind,
                        "count": alert.count,
                    }
                },
            )
        return alerts
