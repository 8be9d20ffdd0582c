"""
User & Identity Models
======================

Minimal projection of the platform's user records that the payment engine
reads and writes:
- User: nostr pubkey, payout Lightning address, admin flag, API key hash.
- TrustScore: Web-of-Trust score with the subscription discount it earns.
- Identity: NIP-05 name (local_part@domain) owned by a user. Marketplace
  settlement reassigns ownership to the buyer.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.models import new_id, utcnow


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    pubkey: str = Field(unique=True, index=True, max_length=64)
    npub: Optional[str] = Field(default=None, nullable=True, max_length=80)
    lightning_address: Optional[str] = Field(default=None, nullable=True, max_length=255)
    is_admin: bool = Field(default=False)
    # API key auth: key_id is public, secret is stored as HMAC-SHA256 hex
    api_key_id: Optional[str] = Field(default=None, nullable=True, unique=True, index=True, max_length=32)
    api_key_hash: Optional[str] = Field(default=None, nullable=True, max_length=64)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TrustScore(SQLModel, table=True):
    """Web-of-Trust reputation. ``discount_percent`` is uncapped here; billing caps it."""

    __tablename__ = "trust_scores"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", unique=True, index=True, max_length=36)
    score: float = Field(default=0.0)
    discount_percent: int = Field(default=0)
    computed_at: datetime = Field(default_factory=utcnow)


class Identity(SQLModel, table=True):
    __tablename__ = "identities"
    __table_args__ = (UniqueConstraint("local_part", "domain", name="uq_identity_name"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=36)
    local_part: str = Field(max_length=64)
    domain: str = Field(max_length=255)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
