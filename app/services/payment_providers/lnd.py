"""
LND payment provider (stub).

Mock mode issues placeholder invoices. Live mode needs the LND gRPC
AddInvoice / LookupInvoice calls, which are not wired up yet; creation fails
with ProviderUnavailable and status polls report UNKNOWN. LND has no webhook
delivery, so payments on this backend are confirmed by polling.
"""

from typing import Any, Optional

import httpx

from app.core.errors import ProviderUnavailable
from app.services.payment_providers.base import (
    BasePaymentProvider,
    InvoiceRequest,
    InvoiceResponse,
    InvoiceStatus,
    ProviderMode,
    ProviderType,
    WebhookEvent,
)


class LndProvider(BasePaymentProvider):
    type = ProviderType.LND
    supports_signatures = False
    mock_tag = "lndmock"

    def __init__(
        self,
        grpc_host: str = "",
        grpc_port: int = 10009,
        tls_cert_path: Optional[str] = None,
        macaroon_hex: Optional[str] = None,
        mode: ProviderMode = ProviderMode.LIVE,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(mode=mode, timeout_s=timeout_s, client=client)
        self.grpc_host = grpc_host
        self.grpc_port = grpc_port
        self.tls_cert_path = tls_cert_path
        self.macaroon_hex = macaroon_hex

    async def _create_live_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        raise ProviderUnavailable(
            detail="LND invoice creation is not implemented",
            context={"provider": self.type.value},
        )

    async def _live_invoice_status(
        self, provider_invoice_id: str, payment_hash: Optional[str]
    ) -> InvoiceStatus:
        raise ProviderUnavailable(
            detail="LND invoice lookup is not implemented",
            context={"provider": self.type.value},
        )

    def parse_webhook_event(self, payload: Any) -> Optional[WebhookEvent]:
        return None
