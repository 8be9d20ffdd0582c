"""
Core Lightning payment provider (stub).

Mock mode issues placeholder invoices. Live mode (REST + rune) is not wired
up yet: creation fails with ProviderUnavailable, status polls report UNKNOWN.
CLN does not deliver webhooks without a plugin.
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


class ClnProvider(BasePaymentProvider):
    type = ProviderType.CLN
    supports_signatures = False
    mock_tag = "clnmock"

    def __init__(
        self,
        rest_host: str = "",
        rest_port: int = 3010,
        rune: Optional[str] = None,
        mode: ProviderMode = ProviderMode.LIVE,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(mode=mode, timeout_s=timeout_s, client=client)
        self.rest_host = rest_host
        self.rest_port = rest_port
        self.rune = rune

    async def _create_live_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        raise ProviderUnavailable(
            detail="CLN invoice creation is not implemented",
            context={"provider": self.type.value},
        )

    async def _live_invoice_status(
        self, provider_invoice_id: str, payment_hash: Optional[str]
    ) -> InvoiceStatus:
        raise ProviderUnavailable(
            detail="CLN invoice lookup is not implemented",
            context={"provider": self.type.value},
        )

    def parse_webhook_event(self, payload: Any) -> Optional[WebhookEvent]:
        return None
