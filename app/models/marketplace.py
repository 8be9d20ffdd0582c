"""
Marketplace Settlement Models
=============================

SQLModel tables for NIP-05 name sales:
- NameListing: fixed-price listing. active → pending_sale → sold.
- NameAuction + AuctionBid: auction settled by the highest bidder.
  active/ended → settlement_pending → settled.
- MarketplaceTransaction: one per buyer invoice.
  status: pending → paid → settled (failed is terminal).
  seller_payout_status: NULL → sending → sent | failed (failed may be retried).
- NameTransfer: proof of settlement, created exactly once per settled transaction.

Invariant: platform_fee_sats + seller_payout_sats == total_sats.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text

from app.models import new_id, utcnow

LISTING_ACTIVE = "active"
LISTING_PENDING_SALE = "pending_sale"
LISTING_SOLD = "sold"

AUCTION_ACTIVE = "active"
AUCTION_ENDED = "ended"
AUCTION_SETTLEMENT_PENDING = "settlement_pending"
AUCTION_SETTLED = "settled"
AUCTION_CANCELLED = "cancelled"

TX_PENDING = "pending"
TX_PAID = "paid"
TX_SETTLED = "settled"
TX_FAILED = "failed"

PAYOUT_SENDING = "sending"
PAYOUT_SENT = "sent"
PAYOUT_FAILED = "failed"


class NameListing(SQLModel, table=True):
    __tablename__ = "name_listings"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    seller_pubkey: str = Field(index=True, max_length=64)
    name: str = Field(max_length=64)
    domain: str = Field(max_length=255)
    fixed_price_sats: Optional[int] = Field(default=None, nullable=True)
    status: str = Field(default=LISTING_ACTIVE, index=True, max_length=16)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class NameAuction(SQLModel, table=True):
    __tablename__ = "name_auctions"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    seller_pubkey: str = Field(index=True, max_length=64)
    name: str = Field(max_length=64)
    domain: str = Field(max_length=255)
    status: str = Field(default=AUCTION_ACTIVE, index=True, max_length=24)
    ends_at: Optional[datetime] = Field(default=None, nullable=True)
    winner_pubkey: Optional[str] = Field(default=None, nullable=True, max_length=64)
    winning_bid_sats: Optional[int] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AuctionBid(SQLModel, table=True):
    __tablename__ = "auction_bids"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    auction_id: str = Field(foreign_key="name_auctions.id", index=True, max_length=36)
    bidder_pubkey: str = Field(max_length=64)
    amount_sats: int
    created_at: datetime = Field(default_factory=utcnow)


class MarketplaceTransaction(SQLModel, table=True):
    __tablename__ = "marketplace_transactions"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    source_type: str = Field(max_length=16)  # listing | auction
    source_id: str = Field(index=True, max_length=36)
    buyer_pubkey: str = Field(index=True, max_length=64)
    seller_pubkey: str = Field(index=True, max_length=64)
    total_sats: int
    fee_bps: int
    platform_fee_sats: int
    seller_payout_sats: int
    status: str = Field(default=TX_PENDING, index=True, max_length=16)
    payment_provider: str = Field(max_length=16)
    payment_hash: Optional[str] = Field(default=None, nullable=True, index=True, max_length=128)
    provider_invoice_id: str = Field(index=True, max_length=128)
    invoice: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    payment_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    seller_payout_status: Optional[str] = Field(default=None, nullable=True, max_length=16)
    seller_payout_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    payout_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    transfer_id: Optional[str] = Field(default=None, nullable=True, max_length=36)
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = Field(default=None, nullable=True)
    settled_at: Optional[datetime] = Field(default=None, nullable=True)
    updated_at: datetime = Field(default_factory=utcnow)


class NameTransfer(SQLModel, table=True):
    __tablename__ = "name_transfers"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    transaction_id: str = Field(foreign_key="marketplace_transactions.id", unique=True, max_length=36)
    source_type: str = Field(max_length=16)
    source_id: str = Field(max_length=36)
    buyer_pubkey: str = Field(max_length=64)
    seller_pubkey: str = Field(max_length=64)
    amount_sats: int
    platform_fee_sats: int
    seller_payout_sats: int
    escrow_status: str = Field(default="released", max_length=16)  # held | released
    transfer_status: str = Field(default="completed", max_length=16)  # completed | failed
    note: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    completed_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utcnow)
