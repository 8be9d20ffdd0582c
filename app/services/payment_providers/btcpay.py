"""
BTCPay Server payment provider (Greenfield API).

    POST /api/v1/stores/{store}/invoices                       amount in BTC
    GET  /api/v1/stores/{store}/invoices/{id}/payment-methods  → Lightning bolt11
    GET  /api/v1/stores/{store}/invoices/{id}                  status: New | Processing | Settled | Expired | Invalid

Webhooks carry ``invoiceId`` and ``type`` (InvoiceSettled, InvoiceExpired, ...)
and are signed with ``BTCPay-Sig: sha256=<hex>`` over the raw body.
"""

import logging
import math
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

SATS_PER_BTC = 100_000_000

_STATUS_MAP = {
    "settled": PaymentState.PAID,
    "complete": PaymentState.PAID,
    "confirmed": PaymentState.PAID,
    "expired": PaymentState.EXPIRED,
    "invalid": PaymentState.FAILED,
}


class BtcpayProvider(BasePaymentProvider):
    type = ProviderType.BTCPAY
    mock_tag = "btcpaymock"

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        store_id: str = "",
        webhook_secret: Optional[str] = None,
        mode: ProviderMode = ProviderMode.LIVE,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(mode=mode, webhook_secret=webhook_secret, timeout_s=timeout_s, client=client)
        if self.mode == ProviderMode.LIVE and not (base_url and api_key and store_id):
            raise ConfigurationError(detail="BTCPay live mode requires base_url, api_key and store_id")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.store_id = store_id

    def _headers(self) -> dict:
        return {"Authorization": f"token {self.api_key}", "Content-Type": "application/json"}

    def _invoices_url(self) -> str:
        return f"{self.base_url}/api/v1/stores/{self.store_id}/invoices"

    async def _create_live_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        body = {
            "amount": f"{request.amount_sats / SATS_PER_BTC:.8f}",
            "currency": "BTC",
            "metadata": request.metadata or {},
        }
        if request.expires_in_seconds:
            body["checkout"] = {"expirationMinutes": math.ceil(request.expires_in_seconds / 60)}

        response = await self._request("POST", self._invoices_url(), headers=self._headers(), json=body)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(detail="BTCPay returned a non-JSON invoice response") from exc

        invoice_id = data.get("id")
        if not invoice_id:
            raise ProviderError(detail="BTCPay invoice response missing id", context={"provider": self.type.value})

        bolt11 = await self._fetch_lightning_invoice(invoice_id)
        if not bolt11:
            raise ProviderError(
                detail="BTCPay invoice has no Lightning payment method",
                context={"provider": self.type.value, "invoice_id": invoice_id},
            )

        return InvoiceResponse(
            provider=self.type,
            provider_invoice_id=invoice_id,
            bolt11=bolt11,
            expires_at=expiry_from_now(request.expires_in_seconds),
            raw=data,
        )

    async def _fetch_lightning_invoice(self, invoice_id: str) -> Optional[str]:
        try:
            response = await self._request(
                "GET", f"{self._invoices_url()}/{invoice_id}/payment-methods", headers=self._headers()
            )
            data = response.json()
        except (ProviderError, ValueError) as exc:
            logger.warning("BTCPay payment-methods lookup failed: invoice_id=%s error=%s", invoice_id, exc)
            return None

        methods = data if isinstance(data, list) else list((data or {}).values())
        for method in methods:
            if not isinstance(method, dict):
                continue
            kind = str(method.get("paymentMethodId") or method.get("paymentMethod") or method.get("id") or "").lower()
            if "lightning" in kind or kind.endswith("-ln") or kind == "ln":
                return method.get("destination") or method.get("bolt11") or method.get("paymentLink")
        return None

    async def _live_invoice_status(
        self, provider_invoice_id: str, payment_hash: Optional[str]
    ) -> InvoiceStatus:
        response = await self._request(
            "GET", f"{self._invoices_url()}/{provider_invoice_id}", headers=self._headers()
        )
        data = response.json()
        status = str(data.get("status") or "").lower()
        state = _STATUS_MAP.get(status, PaymentState.PENDING)

        paid_at = None
        if state == PaymentState.PAID:
            paid_at = parse_timestamp(data.get("paidTime") or data.get("paidAt") or data.get("paidDate"))

        return InvoiceStatus(
            provider=self.type,
            provider_invoice_id=provider_invoice_id,
            state=state,
            paid_at=paid_at,
            raw=data,
        )

    def parse_webhook_event(self, payload: Any) -> Optional[WebhookEvent]:
        if not isinstance(payload, dict):
            return None
        invoice_id = payload.get("invoiceId") or payload.get("id")
        event_type = payload.get("type") or payload.get("event") or payload.get("eventType")
        if not invoice_id or not event_type:
            return None

        normalized = str(event_type).lower()
        state = None
        if "settled" in normalized:
            state = PaymentState.PAID
        elif "expired" in normalized:
            state = PaymentState.EXPIRED
        elif "invalid" in normalized:
            state = PaymentState.FAILED

        return WebhookEvent(
            provider=self.type,
            provider_invoice_id=str(invoice_id),
            state=state,
            raw=payload,
        )
