"""
Payment Provider Tests
======================

Provider contract and registry selection.

Coverage:
  - Mock mode: placeholder invoices, no network, status pending
  - Live LNbits / BTCPay over httpx.MockTransport (request shape, status mapping)
  - Transport failures: creation raises ProviderUnavailable, polls report unknown
  - Webhook signature verification (weak mode, missing, valid, prefixed, tampered)
  - Webhook payload parsing per backend
  - LND / CLN stubs
  - Registry: resolve order, empty registry, webhook routing, from_config
"""

import hashlib
import hmac
import json

import httpx
import pytest

from app.core.errors import ConfigurationError, NoProviderConfigured, ProviderUnavailable
from app.services.payment_providers import (
    BtcpayConfig,
    BtcpayProvider,
    ClnProvider,
    InvoiceRequest,
    LnbitsConfig,
    LnbitsProvider,
    LndConfig,
    LndProvider,
    PaymentState,
    ProviderConfig,
    ProviderMode,
    ProviderRegistry,
    ProviderType,
    canonical_payload,
)


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Mock mode
# ---------------------------------------------------------------------------

class TestMockMode:

    @pytest.mark.asyncio
    async def test_btcpay_mock_invoice(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK)
        invoice = await provider.create_invoice(InvoiceRequest(amount_sats=21000, memo="x", expires_in_seconds=600))
        assert invoice.provider == ProviderType.BTCPAY
        assert invoice.bolt11.startswith("lnbc21000n1pnbtcpaymock...")
        assert invoice.bolt11.endswith(invoice.provider_invoice_id[:16])
        assert invoice.raw == {"mock": True}
        assert invoice.expires_at is not None

    @pytest.mark.asyncio
    async def test_lnbits_mock_uses_hash_as_id(self):
        provider = LnbitsProvider(mode=ProviderMode.MOCK)
        invoice = await provider.create_invoice(InvoiceRequest(amount_sats=1000, memo="x"))
        assert invoice.payment_hash == invoice.provider_invoice_id
        assert len(invoice.payment_hash) == 64

    @pytest.mark.asyncio
    async def test_mock_ids_are_unique(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK)
        a = await provider.create_invoice(InvoiceRequest(amount_sats=1, memo="a"))
        b = await provider.create_invoice(InvoiceRequest(amount_sats=1, memo="b"))
        assert a.provider_invoice_id != b.provider_invoice_id

    @pytest.mark.asyncio
    async def test_mock_status_is_pending(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK)
        status = await provider.get_invoice_status("anything")
        assert status.state == PaymentState.PENDING

    def test_live_mode_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            LnbitsProvider(base_url="", api_key="")
        with pytest.raises(ConfigurationError):
            BtcpayProvider(base_url="https://btcpay.test", api_key="k", store_id="")


# ---------------------------------------------------------------------------
# LNbits live
# ---------------------------------------------------------------------------

class TestLnbitsLive:

    @pytest.mark.asyncio
    async def test_create_invoice_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("X-Api-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={
                "payment_hash": "ab" * 32,
                "payment_request": "lnbc21000n1real",
                "checking_id": "ab" * 32,
            })

        provider = LnbitsProvider(base_url="https://lnbits.test/", api_key="invoice-key", client=_client(handler))
        invoice = await provider.create_invoice(InvoiceRequest(
            amount_sats=21000, memo="NostrMaxi Pro", expires_in_seconds=600,
            webhook_url="https://pay.test/api/v1/payments/webhook?provider=lnbits", metadata={"tier": "PRO"},
        ))

        assert seen["url"] == "https://lnbits.test/api/v1/payments"
        assert seen["key"] == "invoice-key"
        assert seen["body"]["out"] is False
        assert seen["body"]["amount"] == 21000
        assert seen["body"]["expiry"] == 600
        assert seen["body"]["webhook"].endswith("provider=lnbits")
        assert seen["body"]["extra"] == {"tier": "PRO"}
        assert invoice.bolt11 == "lnbc21000n1real"
        assert invoice.provider_invoice_id == "ab" * 32

    @pytest.mark.asyncio
    async def test_create_invoice_non_2xx_is_unavailable(self):
        provider = LnbitsProvider(
            base_url="https://lnbits.test", api_key="k",
            client=_client(lambda r: httpx.Response(502, text="bad gateway")),
        )
        with pytest.raises(ProviderUnavailable):
            await provider.create_invoice(InvoiceRequest(amount_sats=1, memo="x"))

    @pytest.mark.asyncio
    async def test_create_invoice_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider = LnbitsProvider(base_url="https://lnbits.test", api_key="k", client=_client(handler))
        with pytest.raises(ProviderUnavailable):
            await provider.create_invoice(InvoiceRequest(amount_sats=1, memo="x"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body,expected", [
        ({"paid": True, "time": 1700000000}, PaymentState.PAID),
        ({"paid": False, "pending": True}, PaymentState.PENDING),
        ({"paid": False, "status": "expired"}, PaymentState.EXPIRED),
        ({"status": "failed"}, PaymentState.FAILED),
        ({}, PaymentState.UNKNOWN),
    ])
    async def test_status_mapping(self, body, expected):
        provider = LnbitsProvider(
            base_url="https://lnbits.test", api_key="k",
            client=_client(lambda r: httpx.Response(200, json=body)),
        )
        status = await provider.get_invoice_status("id", "hash")
        assert status.state == expected
        if expected == PaymentState.PAID:
            assert status.paid_at is not None

    @pytest.mark.asyncio
    async def test_status_uses_payment_hash(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={"paid": False})

        provider = LnbitsProvider(base_url="https://lnbits.test", api_key="k", client=_client(handler))
        await provider.get_invoice_status("checking-id", "the-hash")
        assert seen == ["/api/v1/payments/the-hash"]

    @pytest.mark.asyncio
    async def test_status_transport_failure_is_unknown_not_failed(self):
        provider = LnbitsProvider(
            base_url="https://lnbits.test", api_key="k",
            client=_client(lambda r: httpx.Response(500, text="boom")),
        )
        status = await provider.get_invoice_status("id")
        assert status.state == PaymentState.UNKNOWN

    def test_webhook_parse(self):
        provider = LnbitsProvider(mode=ProviderMode.MOCK)
        event = provider.parse_webhook_event({"payment_hash": "h1", "checking_id": "c1", "paid": True})
        assert event.provider_invoice_id == "c1"
        assert event.payment_hash == "h1"
        assert event.state == PaymentState.PAID

        assert provider.parse_webhook_event({"invoiceId": "x", "type": "InvoiceSettled"}) is None
        assert provider.parse_webhook_event(["not", "a", "dict"]) is None


# ---------------------------------------------------------------------------
# BTCPay live
# ---------------------------------------------------------------------------

class TestBtcpayLive:

    @pytest.mark.asyncio
    async def test_create_invoice_fetches_lightning_destination(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            if request.method == "POST":
                body = json.loads(request.content)
                assert body["amount"] == "0.00021000"
                assert body["currency"] == "BTC"
                assert body["checkout"] == {"expirationMinutes": 10}
                assert request.headers["Authorization"] == "token api-key"
                return httpx.Response(200, json={"id": "inv-77", "status": "New"})
            return httpx.Response(200, json=[
                {"paymentMethodId": "BTC-CHAIN", "destination": "bc1q..."},
                {"paymentMethodId": "BTC-LN", "destination": "lnbc21000n1btcpay"},
            ])

        provider = BtcpayProvider(
            base_url="https://btcpay.test", api_key="api-key", store_id="store1", client=_client(handler),
        )
        invoice = await provider.create_invoice(InvoiceRequest(amount_sats=21000, memo="x", expires_in_seconds=600))

        assert invoice.provider_invoice_id == "inv-77"
        assert invoice.bolt11 == "lnbc21000n1btcpay"
        assert seen == [
            ("POST", "/api/v1/stores/store1/invoices"),
            ("GET", "/api/v1/stores/store1/invoices/inv-77/payment-methods"),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,expected", [
        ("Settled", PaymentState.PAID),
        ("Expired", PaymentState.EXPIRED),
        ("Invalid", PaymentState.FAILED),
        ("New", PaymentState.PENDING),
        ("Processing", PaymentState.PENDING),
    ])
    async def test_status_mapping(self, status, expected):
        provider = BtcpayProvider(
            base_url="https://btcpay.test", api_key="k", store_id="s",
            client=_client(lambda r: httpx.Response(200, json={"id": "inv", "status": status})),
        )
        result = await provider.get_invoice_status("inv")
        assert result.state == expected

    def test_webhook_parse(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK)
        settled = provider.parse_webhook_event({"invoiceId": "inv-1", "type": "InvoiceSettled"})
        assert settled.state == PaymentState.PAID
        expired = provider.parse_webhook_event({"invoiceId": "inv-1", "type": "InvoiceExpired"})
        assert expired.state == PaymentState.EXPIRED
        created = provider.parse_webhook_event({"invoiceId": "inv-1", "type": "InvoiceCreated"})
        assert created.state is None
        assert provider.parse_webhook_event({"payment_hash": "h"}) is None


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

class TestWebhookSignature:
    SECRET = "whsec"
    BODY = b'{"invoiceId":"inv-1","type":"InvoiceSettled"}'

    def test_no_secret_accepts_anything(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK)
        assert provider.verify_webhook_signature(self.BODY, None) is True

    def test_missing_signature_rejected(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK, webhook_secret=self.SECRET)
        assert provider.verify_webhook_signature(self.BODY, None) is False
        assert provider.verify_webhook_signature(self.BODY, "") is False

    def test_valid_signature(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK, webhook_secret=self.SECRET)
        sig = _sign(self.SECRET, self.BODY)
        assert provider.verify_webhook_signature(self.BODY, sig) is True
        assert provider.verify_webhook_signature(self.BODY, f"sha256={sig}") is True

    def test_tampered_body_rejected(self):
        provider = BtcpayProvider(mode=ProviderMode.MOCK, webhook_secret=self.SECRET)
        sig = _sign(self.SECRET, self.BODY)
        assert provider.verify_webhook_signature(self.BODY.replace(b"inv-1", b"inv-2"), sig) is False

    def test_parsed_payload_uses_canonical_json(self):
        provider = LnbitsProvider(mode=ProviderMode.MOCK, webhook_secret=self.SECRET)
        payload = {"paid": True, "payment_hash": "h"}
        sig = _sign(self.SECRET, canonical_payload(payload))
        assert canonical_payload(payload) == b'{"paid":true,"payment_hash":"h"}'
        assert provider.verify_webhook_signature(payload, sig) is True


# ---------------------------------------------------------------------------
# Stubs
# ---------------------------------------------------------------------------

class TestStubBackends:

    @pytest.mark.asyncio
    async def test_lnd_live_create_unavailable(self):
        provider = LndProvider(grpc_host="lnd.test")
        with pytest.raises(ProviderUnavailable):
            await provider.create_invoice(InvoiceRequest(amount_sats=1, memo="x"))

    @pytest.mark.asyncio
    async def test_cln_live_status_unknown(self):
        provider = ClnProvider(rest_host="cln.test")
        status = await provider.get_invoice_status("inv")
        assert status.state == PaymentState.UNKNOWN

    @pytest.mark.asyncio
    async def test_stub_mock_mode_works(self):
        provider = ClnProvider(mode=ProviderMode.MOCK)
        invoice = await provider.create_invoice(InvoiceRequest(amount_sats=500, memo="x"))
        assert "clnmock" in invoice.bolt11
        assert provider.supports_signatures is False
        assert provider.parse_webhook_event({"anything": 1}) is None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestProviderRegistry:

    def test_empty_registry_raises(self):
        with pytest.raises(NoProviderConfigured):
            ProviderRegistry().resolve()

    def test_resolve_order(self):
        registry = ProviderRegistry()
        lnbits = LnbitsProvider(mode=ProviderMode.MOCK)
        btcpay = BtcpayProvider(mode=ProviderMode.MOCK)
        registry.register(lnbits)
        registry.register(btcpay)

        # btcpay before lnbits when nothing is preferred
        assert registry.resolve() is btcpay
        assert registry.resolve("lnbits") is lnbits
        # unregistered preference falls through
        assert registry.resolve(ProviderType.LND) is btcpay
        assert ProviderType.LNBITS in registry
        assert "cln" not in registry
        assert len(registry) == 2

    def test_registry_default(self):
        registry = ProviderRegistry(default="lnbits")
        lnbits = LnbitsProvider(mode=ProviderMode.MOCK)
        registry.register(BtcpayProvider(mode=ProviderMode.MOCK))
        registry.register(lnbits)
        assert registry.resolve() is lnbits

    def test_any_registered_provider_as_last_resort(self):
        registry = ProviderRegistry()
        lnd = LndProvider(mode=ProviderMode.MOCK)
        registry.register(lnd)
        assert registry.resolve() is lnd

    def test_resolve_for_webhook(self):
        registry = ProviderRegistry()
        lnbits = LnbitsProvider(mode=ProviderMode.MOCK)
        btcpay = BtcpayProvider(mode=ProviderMode.MOCK)
        registry.register(lnbits)
        registry.register(btcpay)

        assert registry.resolve_for_webhook({"invoiceId": "i", "type": "InvoiceSettled"}) is btcpay
        assert registry.resolve_for_webhook({"payment_hash": "h", "paid": True}) is lnbits
        assert registry.resolve_for_webhook({"payment_hash": "h"}, hint="btcpay") is btcpay
        # unregistered hint falls back to sniffing
        assert registry.resolve_for_webhook({"payment_hash": "h"}, hint="cln") is lnbits
        assert registry.resolve_for_webhook({"unrelated": True}) is None

    def test_from_config_live_backends(self):
        config = ProviderConfig(
            lnbits=LnbitsConfig(base_url="https://lnbits.test", api_key="k", webhook_secret="s"),
            btcpay=BtcpayConfig(base_url="https://btcpay.test", api_key="k", store_id="store"),
            lnd=LndConfig(grpc_host="lnd.test"),
            mock_fallback=True,
            default_provider="lnbits",
        )
        registry = ProviderRegistry.from_config(config)
        assert len(registry) == 3
        assert all(not p.is_mock for p in registry.list())
        assert registry.resolve().type == ProviderType.LNBITS
        assert registry.get("lnbits").webhook_secret == "s"

    def test_from_config_mock_fallback(self):
        registry = ProviderRegistry.from_config(ProviderConfig(mock_fallback=True))
        provider = registry.resolve()
        assert provider.type == ProviderType.BTCPAY
        assert provider.is_mock

    def test_from_config_nothing_configured(self):
        registry = ProviderRegistry.from_config(ProviderConfig(mock_fallback=False))
        assert len(registry) == 0
        with pytest.raises(NoProviderConfigured):
            registry.resolve()
