"""
LNbits payment provider.

Invoice key for incoming invoices:
    POST /api/v1/payments        {out: false, amount, memo, expiry, webhook, extra}
    GET  /api/v1/payments/{hash} {paid, pending?, status?, time?, preimage?}

LNbits echoes ``payment_hash`` and ``checking_id`` in its webhook body.
"""

import logging
import secrets
from typing import Any, Optional

import httpx

from app.core.errors import ConfigurationError, ProviderError
from app.services.payment_providers.base import (
    BasePaymentProvider,
    InvoiceRequest,
    InvoiceResponse,
    InvoiceStatus,
    PaymentState,
    ProviderMode,
    ProviderType,
    WebhookEvent,
    expiry_from_now,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_S = 600


class LnbitsProvider(BasePaymentProvider):
    type = ProviderType.LNBITS

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        webhook_secret: Optional[str] = None,
        mode: ProviderMode = ProviderMode.LIVE,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(mode=mode, webhook_secret=webhook_secret, timeout_s=timeout_s, client=client)
        if self.mode == ProviderMode.LIVE and not (base_url and api_key):
            raise ConfigurationError(detail="LNbits live mode requires base_url and api_key")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def _headers(self) -> dict:
        return {"X-Api-Key": self.api_key, "Content-Type": "application/json"}

    def _mock_ids(self):
        # LNbits identifies invoices by payment hash
        payment_hash = secrets.token_hex(32)
        return payment_hash, payment_hash

    async def _create_live_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        body = {
            "out": False,
            "amount": request.amount_sats,
            "memo": request.memo,
            "expiry": request.expires_in_seconds or DEFAULT_EXPIRY_S,
        }
        if request.webhook_url:
            body["webhook"] = request.webhook_url
        if request.metadata:
            body["extra"] = request.metadata

        response = await self._request(
            "POST", f"{self.base_url}/api/v1/payments", headers=self._headers(), json=body
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(detail="LNbits returned a non-JSON invoice response") from exc

        payment_hash = data.get("payment_hash")
        bolt11 = data.get("payment_request") or data.get("bolt11")
        invoice_id = data.get("checking_id") or payment_hash
        if not bolt11 or not invoice_id:
            raise ProviderError(
                detail="LNbits invoice response missing payment_request/checking_id",
                context={"provider": self.type.value},
            )

        return InvoiceResponse(
            provider=self.type,
            provider_invoice_id=invoice_id,
            bolt11=bolt11,
            payment_hash=payment_hash,
            expires_at=expiry_from_now(request.expires_in_seconds),
            raw=data,
        )

    async def _live_invoice_status(
        self, provider_invoice_id: str, payment_hash: Optional[str]
    ) -> InvoiceStatus:
        lookup_id = payment_hash or provider_invoice_id
        response = await self._request(
            "GET", f"{self.base_url}/api/v1/payments/{lookup_id}", headers=self._headers()
        )
        data = response.json()

        state = _status_to_state(data)
        paid_at = None
        if state == PaymentState.PAID:
            details = data.get("details") or {}
            paid_at = parse_timestamp(data.get("time") or details.get("time"))

        return InvoiceStatus(
            provider=self.type,
            provider_invoice_id=provider_invoice_id,
            state=state,
            paid_at=paid_at,
            preimage=data.get("preimage"),
            raw=data,
        )

    def parse_webhook_event(self, payload: Any) -> Optional[WebhookEvent]:
        if not isinstance(payload, dict):
            return None
        payment_hash = payload.get("payment_hash") or payload.get("paymentHash")
        invoice_id = payload.get("checking_id") or payment_hash
        if not invoice_id:
            return None

        return WebhookEvent(
            provider=self.type,
            provider_invoice_id=invoice_id,
            payment_hash=payment_hash,
            state=_webhook_state(payload),
            raw=payload,
        )


def _status_to_state(data: dict) -> PaymentState:
    if data.get("paid") is True:
        return PaymentState.PAID
    status = str(data.get("status") or "").lower()
    if status == "expired":
        return PaymentState.EXPIRED
    if status == "failed":
        return PaymentState.FAILED
    if data.get("pending") is True or status == "pending" or data.get("paid") is False:
        return PaymentState.PENDING
    return PaymentState.UNKNOWN


def _webhook_state(payload: dict) -> Optional[PaymentState]:
    status = str(payload.get("status") or "").lower()
    if payload.get("paid") is True or status in ("paid", "success"):
        return PaymentState.PAID
    if status == "expired":
        return PaymentState.EXPIRED
    if status == "failed":
        return PaymentState.FAILED
    if payload.get("pending") is True or status == "pending":
        return PaymentState.PENDING
    return None
