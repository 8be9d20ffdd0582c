"""
Shared fixtures for the payment engine tests.

Environment is pinned before any ``app`` import: a throwaway SQLite file,
a fixed HMAC secret and log directory under a temp dir.
"""

import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="nostrmaxi-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/payments.db"
os.environ["NOSTRMAXI_DATA_DIRECTORY"] = _TEST_DIR
os.environ["NOSTRMAXI_LOG_DIRECTORY"] = os.path.join(_TEST_DIR, "logs")
os.environ["NOSTRMAXI_APIKEY_HMAC_SECRET"] = "test-hmac-secret"
os.environ["NOSTRMAXI_BASE_URL"] = "https://pay.test"

from typing import Any, Optional  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from app.core.database import get_engine, get_session_context  # noqa: E402
from app.core.errors import ProviderUnavailable  # noqa: E402
from app.core.errors.registry import error_registry  # noqa: E402
from app.models.marketplace import AuctionBid, NameAuction, NameListing  # noqa: E402
from app.models.user import Identity, TrustScore, User  # noqa: E402
import app.models.payments  # noqa: E402,F401
from app.services.billing_service import BillingService  # noqa: E402
from app.services.lightning_payout import LightningPayoutClient, PayoutResult  # noqa: E402
from app.services.payment_providers import (  # noqa: E402
    BasePaymentProvider,
    InvoiceRequest,
    InvoiceResponse,
    InvoiceStatus,
    PaymentState,
    ProviderMode,
    ProviderRegistry,
    ProviderType,
    WebhookEvent,
)
from app.services.payment_providers.base import expiry_from_now  # noqa: E402
from app.services.split_payment_service import SplitPaymentService  # noqa: E402


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------

class FakeProvider(BasePaymentProvider):
    """In-memory backend: invoices are pending until the test settles them."""

    def __init__(self, provider_type=ProviderType.LNBITS, webhook_secret: Optional[str] = None):
        super().__init__(mode=ProviderMode.LIVE, webhook_secret=webhook_secret)
        self.type = ProviderType(provider_type)
        self.states = {}
        self.requests = []
        self.status_calls = 0
        self.fail_create = False

    async def _create_live_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        if self.fail_create:
            raise ProviderUnavailable(detail="fake backend down")
        n = len(self.requests) + 1
        self.requests.append(request)
        invoice_id = f"{self.type.value}-inv-{n}"
        self.states[invoice_id] = PaymentState.PENDING
        return InvoiceResponse(
            provider=self.type,
            provider_invoice_id=invoice_id,
            bolt11=f"lnbc{request.amount_sats}n1fake{n}",
            payment_hash=f"{self.type.value}-hash-{n}",
            expires_at=expiry_from_now(request.expires_in_seconds),
        )

    async def _live_invoice_status(self, provider_invoice_id: str, payment_hash: Optional[str]) -> InvoiceStatus:
        self.status_calls += 1
        state = self.states.get(provider_invoice_id)
        if state is None:
            raise ProviderUnavailable(detail="fake invoice not found")
        return InvoiceStatus(provider=self.type, provider_invoice_id=provider_invoice_id, state=state)

    def parse_webhook_event(self, payload: Any) -> Optional[WebhookEvent]:
        if not isinstance(payload, dict) or "fake_invoice_id" not in payload:
            return None
        state = payload.get("state")
        return WebhookEvent(
            provider=self.type,
            provider_invoice_id=payload["fake_invoice_id"],
            payment_hash=payload.get("payment_hash"),
            state=PaymentState(state) if state else None,
            raw=payload,
        )

    def mark(self, invoice_id: str, state: PaymentState = PaymentState.PAID) -> None:
        self.states[invoice_id] = state


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session", autouse=True)
def _schema():
    error_registry.load()
    SQLModel.metadata.create_all(get_engine())
    yield


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with get_session_context() as session:
        for table in reversed(SQLModel.metadata.sorted_tables):
            session.connection().execute(table.delete())
        session.commit()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    reg = ProviderRegistry()
    reg.register(fake_provider)
    return reg


@pytest.fixture
def billing(registry):
    return BillingService(registry=registry, base_url="https://pay.test")


@pytest.fixture
def payout_client():
    client = MagicMock(spec=LightningPayoutClient)
    client.pay = AsyncMock(return_value=PayoutResult(payout_id="payout-hash-1"))
    return client


@pytest.fixture
def marketplace(registry, payout_client):
    return SplitPaymentService(
        registry=registry,
        payout_client=payout_client,
        base_url="https://pay.test",
        fee_percent=5,
        invoice_expiry_seconds=900,
    )


# ---------------------------------------------------------------------------
# Data factories
# ---------------------------------------------------------------------------

def make_user(pubkey: str, lightning_address: Optional[str] = None, is_admin: bool = False,
              discount_percent: Optional[int] = None) -> str:
    with get_session_context() as session:
        user = User(pubkey=pubkey, npub=f"npub1{pubkey[:8]}", lightning_address=lightning_address,
                    is_admin=is_admin)
        session.add(user)
        session.flush()
        if discount_percent is not None:
            session.add(TrustScore(user_id=user.id, score=0.9, discount_percent=discount_percent))
        session.commit()
        return user.id


def make_identity(user_id: str, local_part: str, domain: str) -> str:
    with get_session_context() as session:
        identity = Identity(user_id=user_id, local_part=local_part, domain=domain)
        session.add(identity)
        session.commit()
        return identity.id


def make_listing(seller_pubkey: str, price_sats: Optional[int] = 100_000,
                 name: str = "satoshi", domain: str = "nostrmaxi.com") -> str:
    with get_session_context() as session:
        listing = NameListing(seller_pubkey=seller_pubkey, name=name, domain=domain, fixed_price_sats=price_sats)
        session.add(listing)
        session.commit()
        return listing.id


def make_auction(seller_pubkey: str, bids=(), name: str = "hal", domain: str = "nostrmaxi.com",
                 status: str = "ended") -> str:
    """``bids``: iterable of (bidder_pubkey, amount_sats, created_at or None)."""
    with get_session_context() as session:
        auction = NameAuction(seller_pubkey=seller_pubkey, name=name, domain=domain, status=status)
        session.add(auction)
        session.flush()
        for bidder, amount, created_at in bids:
            bid = AuctionBid(auction_id=auction.id, bidder_pubkey=bidder, amount_sats=amount)
            if created_at is not None:
                bid.created_at = created_at
            session.add(bid)
        session.commit()
        return auction.id
