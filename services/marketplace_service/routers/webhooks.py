"""Paystack webhook handler."""

import json

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from libs.common.logging import get_logger
from libs.common.rate_limit import ReferenceRateLimiter
from libs.db.session import get_async_db
from services.marketplace_service.dependencies import (
    get_audit_logger,
    get_paystack_client,
    get_reference_limiter,
    get_settlement_service,
    request_audit_fields,
)
from services.marketplace_service.errors import (
    GatewayError,
    InvalidSignatureError,
    MarketplaceError,
    ValidationError,
)
from services.marketplace_service.models import AuditEventType
from services.marketplace_service.paystack_client import PaystackClient
from services.marketplace_service.services.audit_logger import AuditLogger
from services.marketplace_service.services.settlement import (
    SettlementService,
    SettlementSource,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


def _event_reference(event: str, data: dict) -> str:
    # Refund events carry the original charge under "transaction"
    if event.startswith("refund."):
        transaction = data.get("transaction")
        if isinstance(transaction, dict) and transaction.get("reference"):
            return transaction["reference"]
        return data.get("transaction_reference") or data.get("reference") or ""
    return data.get("reference") or ""


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    gateway: PaystackClient = Depends(get_paystack_client),
    settlement: SettlementService = Depends(get_settlement_service),
    audit: AuditLogger = Depends(get_audit_logger),
    reference_limiter: ReferenceRateLimiter = Depends(get_reference_limiter),
):
    """
    Paystack webhook endpoint (no auth; verified by x-paystack-signature).
    """
    raw = await request.body()
    audit_fields = request_audit_fields(request)

    signature = request.headers.get("x-paystack-signature")
    if not gateway.verify_signature(raw, signature):
        logger.warning("Rejected Paystack webhook with invalid signature")
        audit.log(
            "unknown",
            AuditEventType.WEBHOOK_INVALID_SIGNATURE,
            error="missing signature" if not signature else "signature mismatch",
            **audit_fields,
        )
        raise InvalidSignatureError("Invalid signature")

    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except ValueError as exc:
        raise ValidationError("Malformed webhook payload") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Malformed webhook payload")

    event = payload.get("event") or ""
    data = payload.get("data") or {}
    if not isinstance(event, str) or not isinstance(data, dict):
        raise ValidationError("Malformed webhook payload")
    reference = _event_reference(event, data)
    if not reference:
        return {"received": True}
    if not isinstance(reference, str):
        raise ValidationError("Malformed webhook payload")

    if not reference_limiter.allow(reference):
        logger.warning("Webhook rate limit hit for %s", reference)
        audit.log(
            reference,
            AuditEventType.WEBHOOK_RATE_LIMIT_HIT,
            metadata={"event": event},
            **audit_fields,
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "Too many webhook calls", "code": "RATE_LIMIT_EXCEEDED"},
        )

    audit.log(
        reference,
        AuditEventType.WEBHOOK_RECEIVED,
        amount_kobo=data.get("amount"),
        metadata={"event": event},
        **audit_fields,
    )

    try:
        if event == "charge.success":
            audit.log(
                reference,
                AuditEventType.WEBHOOK_CHARGE_SUCCESS,
                amount_kobo=data.get("amount"),
                metadata={"channel": data.get("channel")},
                **audit_fields,
            )
            result = await settlement.settle(
                db, reference, source=SettlementSource.WEBHOOK
            )
            return {"received": True, "status": result.outcome.value}

        if event == "charge.failed":
            await settlement.record_failed_charge(db, reference, data)
            return {"received": True, "status": "failed"}

        if event == "refund.processed":
            refunded = await settlement.refund(db, reference)
            return {
                "received": True,
                "status": "refunded" if refunded is not None else "ignored",
            }
    except GatewayError as exc:
        # Let Paystack retry once the provider is reachable again
        audit.log(
            reference,
            AuditEventType.WEBHOOK_PROCESSING_FAILED,
            error=exc.message,
            metadata={"event": event},
        )
        raise
    except MarketplaceError as exc:
        logger.error(
            "Webhook %s for %s failed: %s",
            event,
            reference,
            exc.message,
            extra={"extra_fields": {"code": exc.code}},
        )
        audit.log(
            reference,
            AuditEventType.WEBHOOK_PROCESSING_FAILED,
            error=exc.message,
            metadata={"event": event, "code": exc.code},
        )
        return {"received": True, "status": "rejected", "code": exc.code}

    logger.info("Ignoring Paystack event %s for %s", event, reference)
    return {"received": True}
