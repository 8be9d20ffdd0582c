"""
Lightning Payout Client
=======================

PURPOSE:
    Pays marketplace sellers from the platform's LNbits wallet.

FLOW:
    1. GET https://<domain>/.well-known/lnurlp/<name>   (LUD-16 Lightning address)
       → {callback, minSendable, maxSendable} (millisats)
    2. GET <callback>?amount=<msat>&comment=...         → {pr: bolt11}
    3. POST <lnbits>/api/v1/payments {out: true, bolt11} with the admin key

Every failure raises PayoutError (or MissingPayoutDestination). Nothing here
touches the database; the split-settlement service records the outcome.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from app.core.errors import MissingPayoutDestination, PayoutError

logger = logging.getLogger(__name__)

LIGHTNING_ADDRESS_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
LNURL_RE = re.compile(r"^lnurl1[0-9a-z]+$", re.IGNORECASE)

PAYOUT_COMMENT = "NostrMaxi marketplace payout"


def is_valid_lightning_address(value: Optional[str]) -> bool:
    """``user@domain.tld`` or a bech32 ``lnurl1...`` string."""
    if not value:
        return False
    return bool(LIGHTNING_ADDRESS_RE.match(value) or LNURL_RE.match(value))


def _msat_field(params: Dict[str, Any], name: str, domain: str) -> Optional[int]:
    """Millisat bound from an LNURL-pay response; None when absent."""
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise PayoutError(detail=f"lnurlp {name} is not a number", context={"domain": domain})
    try:
        return int(value)
    except ValueError as exc:
        raise PayoutError(detail=f"lnurlp {name} is not a number", context={"domain": domain}) from exc


@dataclass
class PayoutResult:
    payout_id: Optional[str]
    status: str = "sent"
    raw: Dict[str, Any] = field(default_factory=dict)


class LightningPayoutClient:
    """LNURL-pay resolver plus LNbits outgoing payments."""

    def __init__(
        self,
        lnbits_url: Optional[str] = None,
        admin_key: Optional[str] = None,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.lnbits_url = (lnbits_url or "").rstrip("/")
        self.admin_key = admin_key
        self.timeout = httpx.Timeout(timeout_s, connect=min(timeout_s, 5.0))
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.lnbits_url and self.admin_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def pay(self, lightning_address: str, amount_sats: int) -> PayoutResult:
        """
        Pay ``amount_sats`` to a Lightning address.

        Raises:
            MissingPayoutDestination: no address on file.
            PayoutError: resolution, range check, invoice request or wallet payment failed.
        """
        if not lightning_address:
            raise MissingPayoutDestination(detail="seller has no lightning address")
        if not self.configured:
            raise PayoutError(detail="seller payout requires LNbits url and admin key")

        bolt11 = await self.request_invoice(lightning_address, amount_sats)
        data = await self._get_json(
            "POST",
            f"{self.lnbits_url}/api/v1/payments",
            "wallet payment",
            headers={"X-Api-Key": self.admin_key, "Content-Type": "application/json"},
            json={"out": True, "bolt11": bolt11},
        )
        payout_id = data.get("payment_hash") or data.get("checking_id")
        logger.info("Seller payout sent: amount_sats=%d payout_id=%s", amount_sats, payout_id)
        return PayoutResult(payout_id=payout_id, status="sent", raw=data)

    async def request_invoice(self, lightning_address: str, amount_sats: int) -> str:
        """Resolve the LNURL-pay endpoint and fetch a bolt11 for ``amount_sats``."""
        if not LIGHTNING_ADDRESS_RE.match(lightning_address):
            # bech32 lnurl decoding is not supported for payouts
            raise PayoutError(
                detail="only user@domain lightning addresses are supported for payout",
                context={"address_kind": "lnurl"},
            )

        name, domain = lightning_address.split("@", 1)
        amount_msat = amount_sats * 1000

        params = await self._get_json(
            "GET", f"https://{domain}/.well-known/lnurlp/{quote(name)}", "lnurlp resolution"
        )
        callback = params.get("callback")
        if not isinstance(callback, str) or not callback.startswith(("https://", "http://")):
            raise PayoutError(detail="lightning address callback missing or invalid", context={"domain": domain})

        min_sendable = _msat_field(params, "minSendable", domain) or 0
        max_sendable = _msat_field(params, "maxSendable", domain)
        if amount_msat < min_sendable or (max_sendable is not None and amount_msat > max_sendable):
            raise PayoutError(
                detail="payout amount outside seller wallet LNURL range",
                context={"amount_msat": amount_msat, "min": min_sendable, "max": max_sendable},
            )

        invoice = await self._get_json(
            "GET",
            callback,
            "lnurlp callback",
            params={"amount": str(amount_msat), "comment": PAYOUT_COMMENT},
        )
        bolt11 = invoice.get("pr")
        if not bolt11 or not isinstance(bolt11, str):
            raise PayoutError(
                detail=f"LNURL callback did not return an invoice: {invoice.get('reason') or 'no pr'}",
                context={"domain": domain},
            )
        return bolt11

    async def _get_json(self, method: str, url: str, step: str, **kwargs: Any) -> Dict[str, Any]:
        client = self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise PayoutError(detail=f"{step} timed out") from exc
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            raise PayoutError(detail=f"{step} failed: {exc}") from exc

        if response.status_code >= 400:
            raise PayoutError(
                detail=f"{step} returned {response.status_code}",
                context={"status_code": response.status_code},
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise PayoutError(detail=f"{step} returned non-JSON") from exc

        if not isinstance(data, dict):
            raise PayoutError(detail=f"{step} returned unexpected payload")
        if str(data.get("status", "")).upper() == "ERROR":
            raise PayoutError(detail=f"{step} error: {data.get('reason')}")
        return data
