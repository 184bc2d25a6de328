"""
Paystack API client for marketplace checkout and subscription payments.

Provides async methods for:
- Generating transaction references
- Initializing transactions (hosted checkout redirect)
- Verifying transactions after redirect or webhook
- Validating webhook signatures

Calls are bounded by ``PAYSTACK_TIMEOUT_SECONDS`` and never retried here;
verify is safe to repeat, so retries are the caller's decision.
"""

import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.datetime_utils import parse_iso
from libs.common.logging import get_logger
from services.marketplace_service.errors import (
    AmountMismatchError,
    GatewayError,
    VerificationFailedError,
)
from services.marketplace_service.models import AuditEventType
from services.marketplace_service.services.audit_logger import AuditLogger

logger = get_logger(__name__)

REFERENCE_PREFIX = "MKT"


@dataclass
class InitializedTransaction:
    """Result of initializing a Paystack transaction."""

    authorization_url: str
    access_code: str
    reference: str


@dataclass
class VerifiedTransaction:
    """A transaction as Paystack reports it on verify."""

    reference: str
    status: str  # success, failed, abandoned, ...
    amount_kobo: int
    channel: Optional[str] = None
    paid_at: Optional[datetime] = None
    currency: str = "NGN"
    fees_kobo: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    gateway_id: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status == "success"


def _parse_metadata(raw: Any) -> dict[str, Any]:
    # Paystack echoes metadata back as a JSON string when it was sent as one
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw:
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class PaystackClient:
    """Async client for the Paystack Transaction API."""

    def __init__(
        self,
        secret_key: str = None,
        *,
        base_url: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
        audit: Optional[AuditLogger] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not self.secret_key:
            raise ValueError("PAYSTACK_SECRET_KEY is required")
        self.base_url = (base_url or settings.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYSTACK_TIMEOUT_SECONDS
        self.currency = settings.CURRENCY
        self.audit = audit
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _audit(self, reference: str, event: AuditEventType, **fields) -> None:
        if self.audit is not None:
            self.audit.log(reference, event, **fields)

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        reference: str,
        json_data: dict = None,
    ) -> httpx.Response:
        """Make an async request to Paystack, mapping transport failures."""
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                return await client.request(
                    method=method,
                    url=url,
                    headers=self._headers,
                    json=json_data,
                )
        except httpx.TimeoutException as exc:
            logger.error("Paystack request timed out for %s: %s", reference, exc)
            self._audit(
                reference,
                AuditEventType.GATEWAY_ERROR,
                error=f"timeout: {exc}",
                metadata={"endpoint": endpoint},
            )
            raise GatewayError(
                "Payment provider timed out. Please try again."
            ) from exc
        except httpx.RequestError as exc:
            logger.error("Paystack connection failed for %s: %s", reference, exc)
            self._audit(
                reference,
                AuditEventType.GATEWAY_ERROR,
                error=str(exc),
                metadata={"endpoint": endpoint},
            )
            raise GatewayError(
                "Could not reach payment provider. Please try again."
            ) from exc

    @staticmethod
    def _body(response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    # =========================================================================
    # References
    # =========================================================================

    @staticmethod
    def generate_reference(prefix: str = REFERENCE_PREFIX) -> str:
        """Unique transaction reference: ``MKT-<epoch ms>-<random hex>``."""
        return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"

    # =========================================================================
    # Transactions
    # =========================================================================

    async def initialize(
        self,
        email: str,
        amount_kobo: int,
        *,
        callback_url: str,
        metadata: dict = None,
        reference: str = None,
    ) -> InitializedTransaction:
        """
        Start a hosted-checkout transaction.

        Raises:
            GatewayError: Paystack rejected the request or was unreachable
        """
        reference = reference or self.generate_reference()
        payload = {
            "email": email,
            "amount": amount_kobo,
            "currency": self.currency,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        }

        response = await self._request(
            "POST", "/transaction/initialize", reference=reference, json_data=payload
        )
        body = self._body(response)

        if not response.is_success or not body.get("status"):
            message = body.get("message") or "Paystack initialize failed"
            logger.error(
                "Paystack init failed for %s (%s): %s",
                reference,
                response.status_code,
                message,
            )
            self._audit(
                reference,
                AuditEventType.GATEWAY_ERROR,
                amount_kobo=amount_kobo,
                error=message,
                metadata={"endpoint": "initialize", "http_status": response.status_code},
            )
            raise GatewayError(
                "Payment provider rejected the transaction. Please try again.",
                detail={"reference": reference},
            )

        data = body.get("data") or {}
        transaction = InitializedTransaction(
            authorization_url=data.get("authorization_url", ""),
            access_code=data.get("access_code", ""),
            reference=data.get("reference") or reference,
        )
        self._audit(
            transaction.reference,
            AuditEventType.PAYMENT_INITIALIZED,
            amount_kobo=amount_kobo,
            metadata={"type": (metadata or {}).get("type")},
        )
        return transaction

    async def verify(
        self, reference: str, expected_amount_kobo: int = None
    ) -> VerifiedTransaction:
        """
        Fetch a transaction's authoritative status from Paystack.

        Raises:
            GatewayError: Paystack unreachable or erroring
            VerificationFailedError: the transaction did not succeed
            AmountMismatchError: paid amount differs from ``expected_amount_kobo``
        """
        self._audit(reference, AuditEventType.VERIFICATION_STARTED)
        response = await self._request(
            "GET", f"/transaction/verify/{reference}", reference=reference
        )
        body = self._body(response)

        if response.status_code >= 500:
            logger.error(
                "Paystack verify failed for %s (%s)", reference, response.status_code
            )
            self._audit(
                reference,
                AuditEventType.GATEWAY_ERROR,
                error=body.get("message") or response.text[:200],
                metadata={"endpoint": "verify", "http_status": response.status_code},
            )
            raise GatewayError("Payment provider error. Please try again.")

        if not response.is_success or not body.get("status"):
            message = body.get("message") or "Transaction could not be verified"
            self._audit(
                reference,
                AuditEventType.VERIFICATION_FAILED,
                error=message,
                metadata={"http_status": response.status_code},
            )
            raise VerificationFailedError(
                "Payment verification failed. Please try again."
            )

        data = body.get("data") or {}
        transaction = VerifiedTransaction(
            reference=data.get("reference") or reference,
            status=data.get("status") or "unknown",
            amount_kobo=int(data.get("amount") or 0),
            channel=data.get("channel"),
            paid_at=parse_iso(data.get("paid_at") or data.get("paidAt")),
            currency=data.get("currency") or self.currency,
            fees_kobo=data.get("fees"),
            metadata=_parse_metadata(data.get("metadata")),
            gateway_id=str(data["id"]) if data.get("id") is not None else None,
        )

        if not transaction.is_successful:
            self._audit(
                reference,
                AuditEventType.VERIFICATION_FAILED,
                amount_kobo=transaction.amount_kobo,
                error=f"status={transaction.status}",
                metadata={"gateway_response": data.get("gateway_response")},
            )
            raise VerificationFailedError(
                "Payment was not successful.",
                detail={"status": transaction.status},
            )

        if (
            expected_amount_kobo is not None
            and transaction.amount_kobo != expected_amount_kobo
        ):
            self._audit(
                reference,
                AuditEventType.AMOUNT_MISMATCH,
                amount_kobo=transaction.amount_kobo,
                expected_amount_kobo=expected_amount_kobo,
            )
            raise AmountMismatchError(
                "Payment amount does not match order total.",
                expected=expected_amount_kobo,
                actual=transaction.amount_kobo,
            )

        self._audit(
            reference,
            AuditEventType.VERIFICATION_SUCCESS,
            amount_kobo=transaction.amount_kobo,
            metadata={"channel": transaction.channel},
        )
        return transaction

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw body with the secret key, constant-time compare."""
        if not signature:
            return False
        digest = hmac.new(
            self.secret_key.encode("utf-8"), raw_body, hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(digest, signature)
