"""
Payment Provider Base Class
===========================

Abstract base class and value types shared by every Lightning payment backend.

Contract (one implementation per ProviderType):
    create_invoice       → InvoiceResponse (bolt11 + provider invoice id)
    get_invoice_status   → InvoiceStatus, read-only and safe to repeat
    parse_webhook_event  → WebhookEvent, or None when the payload is not ours
    verify_webhook_signature → bool (HMAC-SHA256, constant-time compare)

Mode is explicit: ``ProviderMode.MOCK`` issues placeholder invoices without
any network I/O so the engine is exercisable without a live node;
``ProviderMode.LIVE`` talks to the backend over httpx with a bounded timeout.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx

from app.core.errors import ProviderError, ProviderUnavailable
from app.models import as_utc, utcnow

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    LNBITS = "lnbits"
    BTCPAY = "btcpay"
    LND = "lnd"
    CLN = "cln"


class PaymentState(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ProviderMode(str, Enum):
    LIVE = "live"
    MOCK = "mock"


@dataclass
class InvoiceRequest:
    amount_sats: int
    memo: str
    expires_in_seconds: Optional[int] = None
    webhook_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class InvoiceResponse:
    provider: ProviderType
    provider_invoice_id: str
    bolt11: str
    payment_hash: Optional[str] = None
    expires_at: Optional[datetime] = None  # aware UTC
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InvoiceStatus:
    provider: ProviderType
    provider_invoice_id: str
    state: PaymentState
    paid_at: Optional[datetime] = None  # aware UTC
    preimage: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    provider: ProviderType
    provider_invoice_id: str
    payment_hash: Optional[str] = None
    state: Optional[PaymentState] = None  # None: event type we do not act on
    raw: Dict[str, Any] = field(default_factory=dict)


def canonical_payload(payload: Any) -> bytes:
    """Signing input when only the parsed payload is available: compact JSON, sorted keys."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds or ISO-8601 string → aware UTC datetime."""
    if value is None or value == "":
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None
    return as_utc(parsed)


class BasePaymentProvider(ABC):
    """
    Abstract base class for Lightning payment backends.

    Subclasses implement the live calls (``_create_live_invoice``,
    ``_live_invoice_status``) and the webhook shape (``parse_webhook_event``).
    Mock mode, timeouts, signature checking and error mapping live here.
    """

    type: ProviderType
    supports_signatures: bool = True
    # Marker embedded in placeholder bolt11 strings
    mock_tag: str = "mock"

    def __init__(
        self,
        mode: ProviderMode = ProviderMode.LIVE,
        webhook_secret: Optional[str] = None,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.mode = ProviderMode(mode)
        self.webhook_secret = webhook_secret or None
        self.timeout = httpx.Timeout(timeout_s, connect=min(timeout_s, 5.0))
        self._client = client

    @property
    def is_mock(self) -> bool:
        return self.mode == ProviderMode.MOCK

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        """
        Issue an invoice for ``request.amount_sats``.

        Raises:
            ProviderUnavailable: backend unreachable, timed out or returned non-2xx.
            ProviderError: backend answered but the response is unusable.
        """
        if self.is_mock:
            return self._mock_invoice(request)
        response = await self._create_live_invoice(request)
        logger.info(
            "Invoice created: provider=%s invoice_id=%s amount_sats=%d",
            self.type.value, response.provider_invoice_id, request.amount_sats,
        )
        return response

    async def get_invoice_status(
        self, provider_invoice_id: str, payment_hash: Optional[str] = None
    ) -> InvoiceStatus:
        """Poll the backend. Transport failures degrade to UNKNOWN, never FAILED."""
        if self.is_mock:
            return InvoiceStatus(
                provider=self.type,
                provider_invoice_id=provider_invoice_id,
                state=PaymentState.PENDING,
                raw={"mock": True},
            )
        try:
            return await self._live_invoice_status(provider_invoice_id, payment_hash)
        except (ProviderError, ValueError) as exc:
            logger.warning(
                "Status poll failed, reporting unknown: provider=%s invoice_id=%s error=%s",
                self.type.value, provider_invoice_id, exc,
            )
            return InvoiceStatus(
                provider=self.type,
                provider_invoice_id=provider_invoice_id,
                state=PaymentState.UNKNOWN,
            )

    @abstractmethod
    def parse_webhook_event(self, payload: Any) -> Optional[WebhookEvent]:
        """Return the event, or None when ``payload`` does not match this backend's shape."""

    def verify_webhook_signature(
        self,
        raw_body: Union[bytes, str, Dict[str, Any], None],
        signature: Optional[str],
    ) -> bool:
        """
        Check an HMAC-SHA256 webhook signature.

        No configured secret means unsigned webhooks are accepted (local/dev
        only). With a secret, a missing signature is rejected. A ``sha256=``
        prefix on the signature is accepted.
        """
        if not self.webhook_secret:
            return True
        if not signature:
            return False

        if isinstance(raw_body, bytes):
            body = raw_body
        elif isinstance(raw_body, str):
            body = raw_body.encode("utf-8")
        else:
            body = canonical_payload(raw_body)

        expected = hmac.new(self.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        received = signature.strip()
        if received.lower().startswith("sha256="):
            received = received[7:]
        return hmac.compare_digest(expected.encode("ascii"), received.lower().encode("utf-8"))

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _create_live_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        ...

    @abstractmethod
    async def _live_invoice_status(
        self, provider_invoice_id: str, payment_hash: Optional[str]
    ) -> InvoiceStatus:
        ...

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mock_ids(self) -> tuple[str, Optional[str]]:
        """(provider_invoice_id, payment_hash) for a placeholder invoice."""
        return secrets.token_hex(12), None

    def _mock_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        invoice_id, payment_hash = self._mock_ids()
        bolt11 = f"lnbc{request.amount_sats}n1pn{self.mock_tag}...{invoice_id[:16]}"
        logger.info(
            "Mock invoice issued: provider=%s invoice_id=%s amount_sats=%d",
            self.type.value, invoice_id, request.amount_sats,
        )
        return InvoiceResponse(
            provider=self.type,
            provider_invoice_id=invoice_id,
            bolt11=bolt11,
            payment_hash=payment_hash,
            expires_at=expiry_from_now(request.expires_in_seconds),
            raw={"mock": True},
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Perform one backend call.

        Raises ProviderUnavailable on timeout, connection error or non-2xx.
        """
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("%s %s timed out: %s", self.type.value, method, exc)
            raise ProviderUnavailable(
                detail=f"{self.type.value} request timed out",
                context={"provider": self.type.value},
            ) from exc
        except httpx.RequestError as exc:
            logger.error("%s %s connection error: %s", self.type.value, method, exc)
            raise ProviderUnavailable(
                detail=f"cannot reach {self.type.value}: {exc}",
                context={"provider": self.type.value},
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "%s %s returned %d: %s",
                self.type.value, method, response.status_code, response.text[:500],
            )
            raise ProviderUnavailable(
                detail=f"{self.type.value} returned {response.status_code}",
                context={"provider": self.type.value, "status_code": response.status_code},
            )
        return response


def expiry_from_now(expires_in_seconds: Optional[int]) -> Optional[datetime]:
    if not expires_in_seconds:
        return None
    return utcnow() + timedelta(seconds=expires_in_seconds)
