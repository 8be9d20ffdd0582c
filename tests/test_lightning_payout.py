"""
Lightning payout client tests: LNURL-pay resolution and LNbits wallet payment,
driven through httpx.MockTransport.
"""

import json

import httpx
import pytest

from app.core.errors import MissingPayoutDestination, PayoutError
from app.services.lightning_payout import (
    PAYOUT_COMMENT,
    LightningPayoutClient,
    is_valid_lightning_address,
)

LNBITS = "https://lnbits.test"


def _client(handler) -> LightningPayoutClient:
    return LightningPayoutClient(
        lnbits_url=LNBITS,
        admin_key="admin-key",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class WalletStub:
    """Seller wallet (lnurlp + callback) and platform LNbits in one handler."""

    def __init__(self, min_msat=1000, max_msat=10**11, pr="lnbc950u1seller", lnurlp_status=200,
                 callback_status=200, pay_status=201, callback="https://getalby.com/lnurlp/alice/callback"):
        self.callback = callback
        self.min_msat = min_msat
        self.max_msat = max_msat
        self.pr = pr
        self.lnurlp_status = lnurlp_status
        self.callback_status = callback_status
        self.pay_status = pay_status
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path == "/.well-known/lnurlp/alice":
            return httpx.Response(self.lnurlp_status, json={
                "tag": "payRequest",
                "callback": self.callback,
                "minSendable": self.min_msat,
                "maxSendable": self.max_msat,
            })
        if path == "/lnurlp/alice/callback":
            body = {"pr": self.pr, "routes": []} if self.pr else {"status": "OK", "routes": []}
            return httpx.Response(self.callback_status, json=body)
        if path == "/api/v1/payments":
            return httpx.Response(self.pay_status, json={"payment_hash": "payout-hash", "checking_id": "chk"})
        return httpx.Response(404)


@pytest.mark.asyncio
async def test_pays_lightning_address():
    stub = WalletStub()
    result = await _client(stub).pay("alice@getalby.com", 95_000)

    assert result.payout_id == "payout-hash"
    assert result.status == "sent"

    lnurlp, callback, payment = stub.calls
    assert str(lnurlp.url) == "https://getalby.com/.well-known/lnurlp/alice"
    assert callback.url.params["amount"] == "95000000"
    assert callback.url.params["comment"] == PAYOUT_COMMENT
    assert payment.method == "POST"
    assert str(payment.url) == f"{LNBITS}/api/v1/payments"
    assert payment.headers["X-Api-Key"] == "admin-key"
    assert json.loads(payment.content) == {"out": True, "bolt11": "lnbc950u1seller"}


@pytest.mark.asyncio
async def test_amount_outside_lnurl_range():
    stub = WalletStub(min_msat=1000, max_msat=50_000_000)
    with pytest.raises(PayoutError, match="range"):
        await _client(stub).pay("alice@getalby.com", 95_000)
    # no invoice requested, nothing paid
    assert len(stub.calls) == 1


@pytest.mark.asyncio
async def test_numeric_string_bounds_accepted():
    stub = WalletStub(min_msat="1000", max_msat="100000000000")
    result = await _client(stub).pay("alice@getalby.com", 1000)
    assert result.payout_id == "payout-hash"


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"min_msat": "1,000"},
    {"max_msat": {"msat": 10}},
    {"callback": 42},
    {"callback": "ftp://getalby.com/lnurlp/alice/callback"},
])
async def test_malformed_lnurl_response(overrides):
    stub = WalletStub(**overrides)
    with pytest.raises(PayoutError):
        await _client(stub).pay("alice@getalby.com", 1000)
    assert all(call.url.path != "/api/v1/payments" for call in stub.calls)


@pytest.mark.asyncio
async def test_callback_without_invoice():
    stub = WalletStub(pr=None)
    with pytest.raises(PayoutError, match="did not return an invoice"):
        await _client(stub).pay("alice@getalby.com", 1000)
    assert all(call.url.path != "/api/v1/payments" for call in stub.calls)


@pytest.mark.asyncio
@pytest.mark.parametrize("field,status", [("lnurlp_status", 404), ("callback_status", 500), ("pay_status", 400)])
async def test_http_errors_raise_payout_error(field, status):
    stub = WalletStub(**{field: status})
    with pytest.raises(PayoutError) as exc_info:
        await _client(stub).pay("alice@getalby.com", 1000)
    assert str(status) in exc_info.value.detail


@pytest.mark.asyncio
async def test_connection_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(PayoutError, match="lnurlp resolution failed"):
        await _client(handler).pay("alice@getalby.com", 1000)


@pytest.mark.asyncio
async def test_lnurl_strings_are_not_payable():
    stub = WalletStub()
    with pytest.raises(PayoutError):
        await _client(stub).pay("lnurl1dp68gurn8ghj7um9wfmxjcm99e3k7mf0v9cxj0m385ekvcenxc6r2c35", 1000)
    assert stub.calls == []


@pytest.mark.asyncio
async def test_missing_destination_and_configuration():
    with pytest.raises(MissingPayoutDestination):
        await _client(WalletStub()).pay("", 1000)

    unconfigured = LightningPayoutClient(lnbits_url=None, admin_key=None)
    assert not unconfigured.configured
    with pytest.raises(PayoutError, match="admin key"):
        await unconfigured.pay("alice@getalby.com", 1000)


@pytest.mark.parametrize("value,expected", [
    ("alice@getalby.com", True),
    ("LNURL1DP68GURN8GHJ7", True),
    ("alice@localhost", False),
    ("alice getalby.com", False),
    (None, False),
    ("", False),
])
def test_is_valid_lightning_address(value, expected):
    assert is_valid_lightning_address(value) is expected
