"""
Subscription Billing Models
===========================

SQLModel tables for subscription billing:
- Subscription: one per user; tier + expiry, mutated only by payment confirmation.
- Payment: one per issued invoice. status: pending → paid | expired | failed (all terminal).
- AuditEntry: append-only trail. The ``payment.created`` entry pins the tier,
  billing cycle and discount chosen at invoice time; confirmation reads it back.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text

from app.models import new_id, utcnow

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_EXPIRED = "expired"
PAYMENT_FAILED = "failed"
TERMINAL_PAYMENT_STATES = frozenset({PAYMENT_PAID, PAYMENT_EXPIRED, PAYMENT_FAILED})


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", unique=True, index=True, max_length=36)
    tier: str = Field(default="FREE", max_length=16)
    expires_at: Optional[datetime] = Field(default=None, nullable=True)
    cancelled_at: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Payment(SQLModel, table=True):
    __tablename__ = "payments"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    subscription_id: str = Field(foreign_key="subscriptions.id", index=True, max_length=36)
    amount_sats: int
    amount_usd: int  # cents, display only
    method: str = Field(default="lightning", max_length=16)
    invoice: str = Field(sa_column=Column(Text, nullable=False))
    payment_hash: Optional[str] = Field(default=None, nullable=True, index=True, max_length=128)
    provider: str = Field(max_length=16)
    provider_invoice_id: str = Field(index=True, max_length=128)
    status: str = Field(default=PAYMENT_PENDING, index=True, max_length=16)
    receipt_number: Optional[str] = Field(default=None, nullable=True, unique=True, max_length=40)
    created_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = Field(default=None, nullable=True)


class AuditEntry(SQLModel, table=True):
    """Append-only. Never updated or deleted."""

    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    action: str = Field(index=True, max_length=64)
    entity: str = Field(max_length=32)
    entity_id: str = Field(index=True, max_length=36)
    actor_pubkey: Optional[str] = Field(default=None, nullable=True, max_length=64)
    details: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))  # JSON
    created_at: datetime = Field(default_factory=utcnow)
