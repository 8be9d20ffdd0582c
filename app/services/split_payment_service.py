"""
Split Payment Service — Marketplace Settlement
==============================================

PURPOSE:
    Settles NIP-05 name sales (fixed-price listings and auctions):
    buyer pays the full price to the platform, the platform keeps its fee,
    pays the seller the remainder over Lightning, then transfers the name.

SETTLEMENT (process_marketplace_purchase):
    1. Claim the payment: status pending → paid (conditional UPDATE).
    2. Claim the payout: seller_payout_status NULL | failed → sending
       (conditional UPDATE on a paid row). At most one caller pays the seller.
    3. Pay the seller via LNURL-pay from the platform wallet.
       Failure → seller_payout_status=failed, payout_error set, PayoutError
       raised. The transaction stays ``paid`` for an operator retry.
    4. One DB transaction: NameTransfer row, listing sold / auction settled,
       identity ownership → buyer, transaction settled.

    No automatic refunds. A crash between a successful payout and step 4
    leaves seller_payout_status=sending, which only an operator can resolve.

SPLIT:
    platform_fee = floor(total × fee% / 100); seller_amount = total − platform_fee
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_
from sqlmodel import select

from app.config import settings
from app.core.database import conditional_update, get_session_context
from app.core.errors import (
    BadSignature,
    InvalidLightningAddressError,
    InvalidSplitError,
    InvalidTransactionState,
    ListingUnavailableError,
    MissingPayoutDestination,
    NotFoundError,
    NotWinnerError,
    PayoutError,
    ValidationError,
)
from app.models import to_iso, utcnow
from app.models.marketplace import (
    AUCTION_ACTIVE,
    AUCTION_ENDED,
    AUCTION_SETTLED,
    AUCTION_SETTLEMENT_PENDING,
    LISTING_ACTIVE,
    LISTING_PENDING_SALE,
    LISTING_SOLD,
    PAYOUT_FAILED,
    PAYOUT_SENDING,
    PAYOUT_SENT,
    TX_FAILED,
    TX_PAID,
    TX_PENDING,
    TX_SETTLED,
    AuctionBid,
    MarketplaceTransaction,
    NameAuction,
    NameListing,
    NameTransfer,
)
from app.models.user import Identity, User
from app.services.lightning_payout import LightningPayoutClient, PayoutResult, is_valid_lightning_address
from app.services.payment_providers import (
    InvoiceRequest,
    PaymentState,
    ProviderRegistry,
    ProviderType,
    get_provider_registry,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Split",
    "SplitPaymentService",
    "calculate_split",
    "get_split_payment_service",
]

DEFAULT_FEE_PERCENT = 5
HISTORY_DEFAULT = 100
HISTORY_MAX = 200


@dataclass(frozen=True)
class Split:
    platform_fee: int
    seller_amount: int

    def to_dict(self) -> Dict[str, int]:
        return {"platformFee": self.platform_fee, "sellerAmount": self.seller_amount}


def calculate_split(total_sats: int, fee_percent: Union[int, float] = DEFAULT_FEE_PERCENT) -> Split:
    """
    Split a sale between platform and seller. The remainder of the floor
    division goes to the seller, so the parts always sum to ``total_sats``.

    Raises:
        InvalidSplitError: total not a positive integer, or fee outside [0, 100).
    """
    if isinstance(total_sats, bool) or not isinstance(total_sats, int) or total_sats <= 0:
        raise InvalidSplitError(detail=f"total_sats must be a positive integer, got {total_sats!r}")
    if (
        isinstance(fee_percent, bool)
        or not isinstance(fee_percent, (int, float))
        or not math.isfinite(fee_percent)
        or fee_percent < 0
        or fee_percent >= 100
    ):
        raise InvalidSplitError(detail=f"fee_percent must be in [0, 100), got {fee_percent!r}")

    fee = (Decimal(total_sats) * Decimal(str(fee_percent)) / 100).to_integral_value(rounding=ROUND_FLOOR)
    platform_fee = int(fee)
    return Split(platform_fee=platform_fee, seller_amount=total_sats - platform_fee)


def _tx_view(tx: MarketplaceTransaction) -> Dict[str, Any]:
    return {
        "id": tx.id,
        "sourceType": tx.source_type,
        "sourceId": tx.source_id,
        "buyerPubkey": tx.buyer_pubkey,
        "sellerPubkey": tx.seller_pubkey,
        "totalSats": tx.total_sats,
        "feeBps": tx.fee_bps,
        "platformFeeSats": tx.platform_fee_sats,
        "sellerPayoutSats": tx.seller_payout_sats,
        "status": tx.status,
        "paymentProvider": tx.payment_provider,
        "paymentHash": tx.payment_hash,
        "providerInvoiceId": tx.provider_invoice_id,
        "sellerPayoutStatus": tx.seller_payout_status,
        "sellerPayoutId": tx.seller_payout_id,
        "transferId": tx.transfer_id,
        "createdAt": to_iso(tx.created_at),
        "paidAt": to_iso(tx.paid_at),
        "settledAt": to_iso(tx.settled_at),
    }


class SplitPaymentService:
    """Marketplace invoices, settlement and seller payouts."""

    def __init__(
        self,
        registry: ProviderRegistry,
        payout_client: Optional[LightningPayoutClient] = None,
        base_url: Optional[str] = None,
        default_provider: Union[ProviderType, str, None] = None,
        fee_percent: Optional[float] = None,
        invoice_expiry_seconds: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.payout_client = payout_client or LightningPayoutClient(
            lnbits_url=settings.lnbits_url,
            admin_key=settings.lnbits_admin_key or settings.lnbits_api_key,
            timeout_s=settings.provider_timeout_s,
        )
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.default_provider = default_provider
        self.fee_percent = settings.marketplace_fee_percent if fee_percent is None else fee_percent
        self.invoice_expiry_seconds = invoice_expiry_seconds or settings.marketplace_invoice_expiry_seconds
        # Fails fast on a misconfigured fee
        calculate_split(100, self.fee_percent)

    @property
    def fee_bps(self) -> int:
        return int(round(self.fee_percent * 100))

    def calculate_split(self, total_sats: int, fee_percent: Optional[float] = None) -> Split:
        return calculate_split(total_sats, self.fee_percent if fee_percent is None else fee_percent)

    # ------------------------------------------------------------------
    # Invoice creation
    # ------------------------------------------------------------------

    async def create_marketplace_invoice(self, listing_id: str, buyer_pubkey: str) -> Dict[str, Any]:
        """
        Invoice the buyer for a fixed-price listing and reserve it.

        Raises:
            NotFoundError, ListingUnavailableError, ValidationError,
            InvalidLightningAddressError, NoProviderConfigured, ProviderError.
        """
        with get_session_context() as session:
            listing = session.get(NameListing, listing_id)
            if listing is None:
                raise NotFoundError(detail="listing not found", context={"listing_id": listing_id})
            if listing.status != LISTING_ACTIVE:
                raise ListingUnavailableError(
                    detail=f"listing is {listing.status}", context={"listing_id": listing_id}
                )
            if not listing.fixed_price_sats:
                raise ValidationError(detail="listing has no fixed price", context={"listing_id": listing_id})
            if listing.seller_pubkey == buyer_pubkey:
                raise ValidationError(detail="seller cannot buy their own listing")
            self._require_payout_destination(session, listing.seller_pubkey)

            amount = listing.fixed_price_sats
            seller_pubkey = listing.seller_pubkey
            label = f"{listing.name}@{listing.domain}"

        return await self._issue(
            source_type="listing",
            source_id=listing_id,
            source_model=NameListing,
            claim_from=LISTING_ACTIVE,
            claim_to=LISTING_PENDING_SALE,
            amount=amount,
            buyer_pubkey=buyer_pubkey,
            seller_pubkey=seller_pubkey,
            memo=f"NostrMaxi Marketplace purchase {label}",
        )

    async def create_auction_settlement_invoice(self, auction_id: str, buyer_pubkey: str) -> Dict[str, Any]:
        """
        Invoice the winning bidder and move the auction to settlement_pending.

        Raises:
            NotFoundError, ListingUnavailableError, NotWinnerError,
            ValidationError, InvalidLightningAddressError, ProviderError.
        """
        with get_session_context() as session:
            auction = session.get(NameAuction, auction_id)
            if auction is None:
                raise NotFoundError(detail="auction not found", context={"auction_id": auction_id})
            if auction.status not in (AUCTION_ACTIVE, AUCTION_ENDED):
                raise ListingUnavailableError(
                    detail=f"auction is {auction.status}", context={"auction_id": auction_id}
                )

            winning = session.exec(
                select(AuctionBid)
                .where(AuctionBid.auction_id == auction_id)
                .order_by(AuctionBid.amount_sats.desc(), AuctionBid.created_at.asc())
            ).first()
            if winning is None:
                raise ValidationError(detail="auction has no winning bid", context={"auction_id": auction_id})
            if winning.bidder_pubkey != buyer_pubkey:
                raise NotWinnerError(detail="only the winner can settle the auction", context={"auction_id": auction_id})
            self._require_payout_destination(session, auction.seller_pubkey)

            amount = winning.amount_sats
            seller_pubkey = auction.seller_pubkey
            label = f"{auction.name}@{auction.domain}"

        return await self._issue(
            source_type="auction",
            source_id=auction_id,
            source_model=NameAuction,
            claim_from=(AUCTION_ACTIVE, AUCTION_ENDED),
            claim_to=AUCTION_SETTLEMENT_PENDING,
            amount=amount,
            buyer_pubkey=buyer_pubkey,
            seller_pubkey=seller_pubkey,
            memo=f"NostrMaxi Auction settlement {label}",
        )

    @staticmethod
    def _require_payout_destination(session, seller_pubkey: str) -> User:
        seller = session.exec(select(User).where(User.pubkey == seller_pubkey)).first()
        if seller is None:
            raise ValidationError(detail="seller account not found", context={"seller_pubkey": seller_pubkey})
        if not seller.lightning_address:
            raise InvalidLightningAddressError(
                detail="seller must set a lightning address before selling",
                context={"seller_pubkey": seller_pubkey},
            )
        if not is_valid_lightning_address(seller.lightning_address):
            raise InvalidLightningAddressError(
                detail="seller lightning address is invalid", context={"seller_pubkey": seller_pubkey}
            )
        return seller

    async def _issue(
        self,
        source_type: str,
        source_id: str,
        source_model,
        claim_from,
        claim_to: str,
        amount: int,
        buyer_pubkey: str,
        seller_pubkey: str,
        memo: str,
    ) -> Dict[str, Any]:
        split = self.calculate_split(amount)
        provider = self.registry.resolve(self.default_provider)
        invoice = await provider.create_invoice(InvoiceRequest(
            amount_sats=amount,
            memo=memo,
            expires_in_seconds=self.invoice_expiry_seconds,
            webhook_url=f"{self.base_url}/api/v1/payments/webhook?provider={provider.type.value}",
            metadata={
                "sourceType": source_type,
                "sourceId": source_id,
                "buyerPubkey": buyer_pubkey,
            },
        ))

        now = utcnow()
        with get_session_context() as session:
            reserved = conditional_update(
                session, source_model, source_id,
                expected={"status": claim_from},
                values={"status": claim_to, "updated_at": now},
            )
            if not reserved:
                session.rollback()
                logger.info(
                    "Lost reservation race: %s=%s invoice %s left unused",
                    source_type, source_id, invoice.provider_invoice_id,
                )
                raise ListingUnavailableError(
                    detail=f"{source_type} was reserved by another buyer",
                    context={"source_id": source_id},
                )

            tx = MarketplaceTransaction(
                source_type=source_type,
                source_id=source_id,
                buyer_pubkey=buyer_pubkey,
                seller_pubkey=seller_pubkey,
                total_sats=amount,
                fee_bps=self.fee_bps,
                platform_fee_sats=split.platform_fee,
                seller_payout_sats=split.seller_amount,
                status=TX_PENDING,
                payment_provider=provider.type.value,
                payment_hash=invoice.payment_hash,
                provider_invoice_id=invoice.provider_invoice_id,
                invoice=invoice.bolt11,
            )
            session.add(tx)
            session.commit()
            tx_id = tx.id

        logger.info(
            "Marketplace invoice created: tx_id=%s %s=%s amount_sats=%d fee=%d seller=%d provider=%s",
            tx_id, source_type, source_id, amount, split.platform_fee, split.seller_amount, provider.type.value,
        )
        return {
            "transactionId": tx_id,
            "invoice": invoice.bolt11,
            "paymentHash": invoice.payment_hash,
            "providerInvoiceId": invoice.provider_invoice_id,
            "amountSats": amount,
            "split": split.to_dict(),
            "provider": provider.type.value,
        }

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def process_marketplace_purchase(
        self,
        transaction_id: str,
        payment_id: str,
        retry_payout: bool = False,
    ) -> Dict[str, Any]:
        """
        Settle a paid marketplace transaction. Idempotent.

        A ``paid`` transaction re-enters the payout step only when
        ``retry_payout`` is set (operator retry).

        Raises:
            NotFoundError: unknown transaction.
            InvalidTransactionState: transaction failed or never existed as pending.
            PayoutError / MissingPayoutDestination: payout failed; transaction stays paid.
        """
        now = utcnow()
        with get_session_context() as session:
            tx = session.get(MarketplaceTransaction, transaction_id)
            if tx is None:
                raise NotFoundError(detail="transaction not found", context={"transaction_id": transaction_id})

            if tx.status == TX_SETTLED:
                return _tx_view(tx)

            if tx.status == TX_PENDING:
                claimed = conditional_update(
                    session, MarketplaceTransaction, transaction_id,
                    expected={"status": TX_PENDING},
                    values={"status": TX_PAID, "paid_at": now, "payment_id": payment_id, "updated_at": now},
                )
                session.commit()
                tx = session.get(MarketplaceTransaction, transaction_id, populate_existing=True)
                if claimed:
                    logger.info("Marketplace payment captured: tx_id=%s payment_id=%s", transaction_id, payment_id)
                elif tx.status == TX_SETTLED or (tx.status == TX_PAID and not retry_payout):
                    return _tx_view(tx)
                elif tx.status != TX_PAID:
                    raise InvalidTransactionState(
                        detail=f"transaction is {tx.status}", context={"transaction_id": transaction_id}
                    )
            elif tx.status == TX_PAID:
                if not retry_payout:
                    return _tx_view(tx)
            else:
                raise InvalidTransactionState(
                    detail=f"transaction is {tx.status}", context={"transaction_id": transaction_id}
                )

            payout_claimed = conditional_update(
                session, MarketplaceTransaction, transaction_id,
                expected={"status": TX_PAID, "seller_payout_status": (None, PAYOUT_FAILED)},
                values={"seller_payout_status": PAYOUT_SENDING, "payout_error": None, "updated_at": now},
            )
            session.commit()
            tx = session.get(MarketplaceTransaction, transaction_id, populate_existing=True)
            if not payout_claimed:
                logger.info(
                    "Payout already claimed: tx_id=%s payout_status=%s", transaction_id, tx.seller_payout_status
                )
                return _tx_view(tx)

            seller = session.exec(select(User).where(User.pubkey == tx.seller_pubkey)).first()
            address = seller.lightning_address if seller is not None else None
            amount = tx.seller_payout_sats

        try:
            if not address:
                raise MissingPayoutDestination(
                    detail="seller lightning address is required for payout",
                    context={"transaction_id": transaction_id},
                )
            payout = await self.execute_seller_payout(address, amount)
        except PayoutError as exc:
            self._record_payout_failure(transaction_id, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected seller payout error: tx_id=%s", transaction_id)
            error = PayoutError(
                detail=f"seller payout failed: {type(exc).__name__}: {exc}",
                context={"transaction_id": transaction_id},
            )
            self._record_payout_failure(transaction_id, error)
            raise error from exc

        return self._settle(transaction_id, payment_id, payout)

    async def execute_seller_payout(self, lightning_address: str, amount_sats: int) -> PayoutResult:
        """Resolve the seller's LNURL-pay endpoint and pay it from the platform wallet."""
        return await self.payout_client.pay(lightning_address, amount_sats)

    def _record_payout_failure(self, transaction_id: str, exc: PayoutError) -> None:
        with get_session_context() as session:
            conditional_update(
                session, MarketplaceTransaction, transaction_id,
                expected={"seller_payout_status": PAYOUT_SENDING},
                values={
                    "seller_payout_status": PAYOUT_FAILED,
                    "payout_error": (exc.detail or exc.code)[:1000],
                    "updated_at": utcnow(),
                },
            )
            session.commit()
        logger.critical(
            "Seller payout failed, transaction left paid: tx_id=%s code=%s detail=%s",
            transaction_id, exc.code, exc.detail,
        )

    def _settle(self, transaction_id: str, payment_id: str, payout: PayoutResult) -> Dict[str, Any]:
        now = utcnow()
        with get_session_context() as session:
            tx = session.get(MarketplaceTransaction, transaction_id)
            transfer = NameTransfer(
                transaction_id=tx.id,
                source_type=tx.source_type,
                source_id=tx.source_id,
                buyer_pubkey=tx.buyer_pubkey,
                seller_pubkey=tx.seller_pubkey,
                amount_sats=tx.total_sats,
                platform_fee_sats=tx.platform_fee_sats,
                seller_payout_sats=tx.seller_payout_sats,
                escrow_status="released",
                transfer_status="completed",
                completed_at=now,
                note=f"Split settlement completed. Provider payment: {payment_id}",
            )
            session.add(transfer)

            if tx.source_type == "listing":
                listing = session.get(NameListing, tx.source_id)
                if listing is not None:
                    listing.status = LISTING_SOLD
                    listing.updated_at = now
                    session.add(listing)
                    self._transfer_identity(session, listing.name, listing.domain, tx.buyer_pubkey)
            elif tx.source_type == "auction":
                auction = session.get(NameAuction, tx.source_id)
                if auction is not None:
                    auction.status = AUCTION_SETTLED
                    auction.winner_pubkey = tx.buyer_pubkey
                    auction.winning_bid_sats = tx.total_sats
                    auction.updated_at = now
                    session.add(auction)
                    self._transfer_identity(session, auction.name, auction.domain, tx.buyer_pubkey)

            tx.status = TX_SETTLED
            tx.seller_payout_status = PAYOUT_SENT
            tx.seller_payout_id = payout.payout_id
            tx.payment_id = tx.payment_id or payment_id
            tx.transfer_id = transfer.id
            tx.settled_at = now
            tx.updated_at = now
            session.add(tx)
            session.commit()
            session.refresh(tx)
            view = _tx_view(tx)

        logger.info(
            "Marketplace transaction settled: tx_id=%s transfer_id=%s payout_id=%s",
            transaction_id, view["transferId"], payout.payout_id,
        )
        return view

    @staticmethod
    def _transfer_identity(session, name: str, domain: str, buyer_pubkey: str) -> bool:
        buyer = session.exec(select(User).where(User.pubkey == buyer_pubkey)).first()
        if buyer is None:
            return False
        identity = session.exec(
            select(Identity).where(
                Identity.local_part == name.lower(),
                Identity.domain == domain.lower(),
                Identity.is_active == True,  # noqa: E712
            )
        ).first()
        if identity is None:
            return False
        identity.user_id = buyer.id
        session.add(identity)
        logger.info("Identity ownership transferred: %s@%s → user_id=%s", name, domain, buyer.id)
        return True

    def _fail_transaction(self, transaction_id: str) -> bool:
        """pending → failed, and release the listing / auction for another buyer."""
        with get_session_context() as session:
            tx = session.get(MarketplaceTransaction, transaction_id)
            changed = conditional_update(
                session, MarketplaceTransaction, transaction_id,
                expected={"status": TX_PENDING},
                values={"status": TX_FAILED, "updated_at": utcnow()},
            )
            if not changed:
                session.rollback()
                return False
            if tx.source_type == "listing":
                conditional_update(
                    session, NameListing, tx.source_id,
                    expected={"status": LISTING_PENDING_SALE},
                    values={"status": LISTING_ACTIVE, "updated_at": utcnow()},
                )
            else:
                conditional_update(
                    session, NameAuction, tx.source_id,
                    expected={"status": AUCTION_SETTLEMENT_PENDING},
                    values={"status": AUCTION_ENDED, "updated_at": utcnow()},
                )
            session.commit()
        logger.info("Marketplace invoice closed unpaid: tx_id=%s", transaction_id)
        return True

    # ------------------------------------------------------------------
    # Webhook & polling
    # ------------------------------------------------------------------

    async def handle_marketplace_webhook(
        self,
        payload: Any,
        signature: Optional[str] = None,
        provider_hint: Union[ProviderType, str, None] = None,
        raw_body: Optional[bytes] = None,
    ) -> Dict[str, Any]:
        """
        Process a provider webhook for a marketplace transaction.

        Raises:
            BadSignature: signature check failed.
        """
        provider = self.registry.resolve_for_webhook(payload, provider_hint)
        if provider is None:
            return {"handled": False}

        if provider.supports_signatures and not provider.verify_webhook_signature(
            raw_body if raw_body is not None else payload, signature
        ):
            logger.warning("Invalid marketplace webhook signature: provider=%s", provider.type.value)
            raise BadSignature(detail="webhook signature mismatch", context={"provider": provider.type.value})

        event = provider.parse_webhook_event(payload)
        if event is None or event.state not in (PaymentState.PAID, PaymentState.EXPIRED, PaymentState.FAILED):
            return {"handled": False}

        with get_session_context() as session:
            conditions = [MarketplaceTransaction.provider_invoice_id == event.provider_invoice_id]
            if event.payment_hash:
                conditions.append(MarketplaceTransaction.payment_hash == event.payment_hash)
            tx = session.exec(select(MarketplaceTransaction).where(or_(*conditions))).first()
            if tx is None:
                return {"handled": False}
            if tx.payment_provider != provider.type.value:
                logger.warning(
                    "Marketplace webhook via %s for tx_id=%s issued by %s, ignoring",
                    provider.type.value, tx.id, tx.payment_provider,
                )
                return {"handled": False}
            tx_id = tx.id
            tx_status = tx.status
            invoice_id = tx.provider_invoice_id
            payment_hash = tx.payment_hash

        if tx_status == TX_SETTLED:
            return {"handled": True, "idempotent": True}

        verified = await provider.get_invoice_status(invoice_id, payment_hash)
        if event.state in (PaymentState.EXPIRED, PaymentState.FAILED):
            if verified.state not in (PaymentState.EXPIRED, PaymentState.FAILED):
                logger.info(
                    "Marketplace close event not confirmed by provider: tx_id=%s state=%s",
                    tx_id, verified.state.value,
                )
                return {"handled": False}
            self._fail_transaction(tx_id)
            return {"handled": True}

        if verified.state != PaymentState.PAID:
            logger.info("Marketplace webhook not confirmed by provider: tx_id=%s state=%s", tx_id, verified.state.value)
            return {"handled": False}

        try:
            view = await self.process_marketplace_purchase(tx_id, event.provider_invoice_id or tx_id)
        except PayoutError:
            # Buyer funds are captured; operators retry the payout
            return {"handled": True, "settled": False}
        return {"handled": True, "settled": view["status"] == TX_SETTLED}

    async def check_transaction_status(self, transaction_id: str) -> Dict[str, Any]:
        """Polling path: re-poll the issuing provider while the transaction is pending."""
        view = self.get_transaction(transaction_id)
        if view["status"] != TX_PENDING:
            return view

        provider = self.registry.get(view["paymentProvider"])
        if provider is None:
            logger.warning("Issuing provider %s not registered for tx_id=%s", view["paymentProvider"], transaction_id)
            return view

        status = await provider.get_invoice_status(view["providerInvoiceId"], view["paymentHash"])
        if status.state == PaymentState.PAID:
            try:
                return await self.process_marketplace_purchase(transaction_id, view["providerInvoiceId"])
            except PayoutError:
                return self.get_transaction(transaction_id)
        if status.state in (PaymentState.EXPIRED, PaymentState.FAILED):
            self._fail_transaction(transaction_id)
            return self.get_transaction(transaction_id)
        return view

    # ------------------------------------------------------------------
    # Admin & seller settings
    # ------------------------------------------------------------------

    async def admin_retry_payout(self, transaction_id: str) -> Dict[str, Any]:
        """
        Operator retry for a stuck payout.

        Raises:
            InvalidTransactionState: the buyer has not paid (or the transaction failed).
            PayoutError: the retry failed again.
        """
        view = self.get_transaction(transaction_id)
        if view["status"] == TX_SETTLED:
            return view
        if view["status"] != TX_PAID:
            raise InvalidTransactionState(
                detail=f"transaction is {view['status']}, nothing to pay out",
                context={"transaction_id": transaction_id},
            )
        logger.warning("Admin payout retry: tx_id=%s previous_status=%s", transaction_id, view["sellerPayoutStatus"])
        return await self.process_marketplace_purchase(
            transaction_id, view.get("paymentId") or view["providerInvoiceId"], retry_payout=True
        )

    def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        with get_session_context() as session:
            tx = session.get(MarketplaceTransaction, transaction_id)
            if tx is None:
                raise NotFoundError(detail="transaction not found", context={"transaction_id": transaction_id})
            view = _tx_view(tx)
            view["paymentId"] = tx.payment_id
            view["payoutError"] = tx.payout_error
            return view

    def get_transaction_history(self, limit: int = HISTORY_DEFAULT) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), HISTORY_MAX))
        with get_session_context() as session:
            rows = session.exec(
                select(MarketplaceTransaction).order_by(MarketplaceTransaction.created_at.desc()).limit(limit)
            ).all()
            history = []
            for tx in rows:
                view = _tx_view(tx)
                view["payoutError"] = tx.payout_error
                history.append(view)
            return history

    def set_seller_lightning_address(self, pubkey: str, lightning_address: str) -> Dict[str, Any]:
        normalized = (lightning_address or "").strip().lower()
        if not is_valid_lightning_address(normalized):
            raise InvalidLightningAddressError(detail="use user@domain.com or lnurl1...")

        with get_session_context() as session:
            user = session.exec(select(User).where(User.pubkey == pubkey)).first()
            if user is None:
                raise NotFoundError(detail="user not found", context={"pubkey": pubkey})
            user.lightning_address = normalized
            user.updated_at = utcnow()
            session.add(user)
            session.commit()
            session.refresh(user)
            return {
                "pubkey": user.pubkey,
                "lightningAddress": user.lightning_address,
                "updatedAt": to_iso(user.updated_at),
            }


_split_payment_service: Optional[SplitPaymentService] = None


def get_split_payment_service() -> SplitPaymentService:
    """Application-wide instance (FastAPI dependency)."""
    global _split_payment_service
    if _split_payment_service is None:
        _split_payment_service = SplitPaymentService(
            registry=get_provider_registry(),
            default_provider=settings.marketplace_payments_provider or settings.payments_provider,
        )
    return _split_payment_service
