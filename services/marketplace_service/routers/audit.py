"""Admin views over the payment audit trail."""

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from services.marketplace_service.dependencies import get_audit_logger
from services.marketplace_service.schemas import (
    AlertResponse,
    AuditEventResponse,
    SuspiciousActivityResponse,
)
from services.marketplace_service.services.audit_logger import AuditLogger

router = APIRouter(prefix="/admin/audit", tags=["admin-audit"])


@router.get("/suspicious", response_model=SuspiciousActivityResponse)
async def suspicious_activity(
    hours: int = Query(24, ge=1, le=24 * 30),
    _admin: AuthUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
):
    activity = await audit.get_suspicious_activity(hours)
    return activity.to_dict()


@router.get("/alerts", response_model=list[AlertResponse])
async def payment_alerts(
    _admin: AuthUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
):
    """Threshold alerts over the last hour; empty when all is quiet."""
    return await audit.check_for_alerts()


@router.get("/failures", response_model=list[AuditEventResponse])
async def recent_failures(
    limit: int = Query(10, ge=1, le=100),
    _admin: AuthUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
):
    return await audit.get_recent_failures(limit)


@router.get("/{reference}", response_model=list[AuditEventResponse])
async def audit_trail(
    reference: str,
    _admin: AuthUser = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
):
    """Every audit event for a payment reference, newest first."""
    return await audit.get_audit_trail(reference)
