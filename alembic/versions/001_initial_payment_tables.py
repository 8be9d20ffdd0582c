"""initial payment and settlement tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("pubkey", sa.String(64), nullable=False),
        sa.Column("npub", sa.String(80), nullable=True),
        sa.Column("lightning_address", sa.String(255), nullable=True),
        sa.Column("is_admin", sa.Boolean, nullable=False, server_default="0"),
        sa.Column("api_key_id", sa.String(32), nullable=True),
        sa.Column("api_key_hash", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_users_pubkey", "users", ["pubkey"], unique=True)
    op.create_index("ix_users_api_key_id", "users", ["api_key_id"], unique=True)

    # --- trust_scores ---
    op.create_table(
        "trust_scores",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("score", sa.Float, nullable=False, server_default="0"),
        sa.Column("discount_percent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_trust_scores_user_id", "trust_scores", ["user_id"], unique=True)

    # --- identities ---
    op.create_table(
        "identities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("local_part", sa.String(64), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("local_part", "domain", name="uq_identity_name"),
    )
    op.create_index("ix_identities_user_id", "identities", ["user_id"])

    # --- subscriptions ---
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tier", sa.String(16), nullable=False, server_default="FREE"),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("cancelled_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)

    # --- payments ---
    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("amount_sats", sa.Integer, nullable=False),
        sa.Column("amount_usd", sa.Integer, nullable=False),
        sa.Column("method", sa.String(16), nullable=False, server_default="lightning"),
        sa.Column("invoice", sa.Text, nullable=False),
        sa.Column("payment_hash", sa.String(128), nullable=True),
        sa.Column("provider", sa.String(16), nullable=False),
        sa.Column("provider_invoice_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("receipt_number", sa.String(40), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("paid_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])
    op.create_index("ix_payments_payment_hash", "payments", ["payment_hash"])
    op.create_index("ix_payments_provider_invoice_id", "payments", ["provider_invoice_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    # --- audit_log ---
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("entity", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("actor_pubkey", sa.String(64), nullable=True),
        sa.Column("details", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_entity_id", "audit_log", ["entity_id"])

    # --- name_listings ---
    op.create_table(
        "name_listings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("seller_pubkey", sa.String(64), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("fixed_price_sats", sa.Integer, nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_name_listings_seller_pubkey", "name_listings", ["seller_pubkey"])
    op.create_index("ix_name_listings_status", "name_listings", ["status"])

    # --- name_auctions ---
    op.create_table(
        "name_auctions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("seller_pubkey", sa.String(64), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("status", sa.String(24), nullable=False, server_default="active"),
        sa.Column("ends_at", sa.DateTime, nullable=True),
        sa.Column("winner_pubkey", sa.String(64), nullable=True),
        sa.Column("winning_bid_sats", sa.Integer, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_name_auctions_seller_pubkey", "name_auctions", ["seller_pubkey"])
    op.create_index("ix_name_auctions_status", "name_auctions", ["status"])

    # --- auction_bids ---
    op.create_table(
        "auction_bids",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("auction_id", sa.String(36), sa.ForeignKey("name_auctions.id"), nullable=False),
        sa.Column("bidder_pubkey", sa.String(64), nullable=False),
        sa.Column("amount_sats", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_auction_bids_auction_id", "auction_bids", ["auction_id"])

    # --- marketplace_transactions ---
    op.create_table(
        "marketplace_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("source_type", sa.String(16), nullable=False),
        sa.Column("source_id", sa.String(36), nullable=False),
        sa.Column("buyer_pubkey", sa.String(64), nullable=False),
        sa.Column("seller_pubkey", sa.String(64), nullable=False),
        sa.Column("total_sats", sa.Integer, nullable=False),
        sa.Column("fee_bps", sa.Integer, nullable=False),
        sa.Column("platform_fee_sats", sa.Integer, nullable=False),
        sa.Column("seller_payout_sats", sa.Integer, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("payment_provider", sa.String(16), nullable=False),
        sa.Column("payment_hash", sa.String(128), nullable=True),
        sa.Column("provider_invoice_id", sa.String(128), nullable=False),
        sa.Column("invoice", sa.Text, nullable=True),
        sa.Column("payment_id", sa.String(128), nullable=True),
        sa.Column("seller_payout_status", sa.String(16), nullable=True),
        sa.Column("seller_payout_id", sa.String(128), nullable=True),
        sa.Column("payout_error", sa.Text, nullable=True),
        sa.Column("transfer_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("paid_at", sa.DateTime, nullable=True),
        sa.Column("settled_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_marketplace_transactions_source_id", "marketplace_transactions", ["source_id"])
    op.create_index("ix_marketplace_transactions_buyer_pubkey", "marketplace_transactions", ["buyer_pubkey"])
    op.create_index("ix_marketplace_transactions_seller_pubkey", "marketplace_transactions", ["seller_pubkey"])
    op.create_index("ix_marketplace_transactions_status", "marketplace_transactions", ["status"])
    op.create_index("ix_marketplace_transactions_payment_hash", "marketplace_transactions", ["payment_hash"])
    op.create_index(
        "ix_marketplace_transactions_provider_invoice_id", "marketplace_transactions", ["provider_invoice_id"]
    )

    # --- name_transfers ---
    op.create_table(
        "name_transfers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "transaction_id", sa.String(36),
            sa.ForeignKey("marketplace_transactions.id"), nullable=False, unique=True,
        ),
        sa.Column("source_type", sa.String(16), nullable=False),
        sa.Column("source_id", sa.String(36), nullable=False),
        sa.Column("buyer_pubkey", sa.String(64), nullable=False),
        sa.Column("seller_pubkey", sa.String(64), nullable=False),
        sa.Column("amount_sats", sa.Integer, nullable=False),
        sa.Column("platform_fee_sats", sa.Integer, nullable=False),
        sa.Column("seller_payout_sats", sa.Integer, nullable=False),
        sa.Column("escrow_status", sa.String(16), nullable=False, server_default="released"),
        sa.Column("transfer_status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("name_transfers")
    op.drop_table("marketplace_transactions")
    op.drop_table("auction_bids")
    op.drop_table("name_auctions")
    op.drop_table("name_listings")
    op.drop_table("audit_log")
    op.drop_table("payments")
    op.drop_table("subscriptions")
    op.drop_table("identities")
    op.drop_table("trust_scores")
    op.drop_table("users")
