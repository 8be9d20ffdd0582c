"""
Billing Service — Lightning Subscription Billing
================================================

PURPOSE:
    Sells subscription tiers for sats and advances each payment exactly once:
    1. **create_invoice()** — prices the tier (cycle multiplier, capped WoT
       discount), asks the provider registry for an invoice and persists a
       pending Payment plus a ``payment.created`` audit snapshot.
    2. **check_invoice_status()** — polling path. Terminal payments return
       the cached state without touching the provider.
    3. **handle_webhook()** — push path. Verifies the signature, finds the
       payment issued by that provider and re-polls it before any change.
    4. **process_payment()** — the single confirmation routine shared by
       both paths. One DB transaction: conditional pending → paid claim,
       subscription extension, receipt number, ``payment.confirmed`` audit.

STATE MACHINE (Payment.status):
    pending → paid      provider confirms payment
    pending → expired   provider reports expired, or older than 10 minutes
    pending → failed    provider reports failure
    All three are terminal.

EXPIRY:
    lifetime: now + 100 years
    annual:   max(now, current expiry) + 365 days
    monthly:  max(now, current expiry) + 30 days
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from app.config import settings
from app.core.database import conditional_update, get_session_context
from app.core.errors import BadSignature, NotFoundError, StateConflictError
from app.models import as_utc, to_epoch, to_iso, utcnow
from app.models.payments import (
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    AuditEntry,
    Payment,
    Subscription,
)
from app.models.user import TrustScore, User
from app.services import tier_catalog
from app.services.payment_providers import (
    InvoiceRequest,
    PaymentState,
    ProviderRegistry,
    ProviderType,
    get_provider_registry,
)

logger = logging.getLogger(__name__)

__all__ = [
    "BillingService",
    "compute_expiry",
    "receipt_number",
    "get_billing_service",
]

LOCAL_EXPIRY_BACKSTOP = timedelta(minutes=10)
LIFETIME_SPAN = timedelta(days=100 * 365)
ANNUAL_SPAN = timedelta(days=365)
MONTHLY_SPAN = timedelta(days=30)

HISTORY_MAX = 100

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def receipt_number(payment_id: str, when: datetime) -> str:
    """``NM-<base36 ms timestamp>-<last 4 of payment id>``, upper-case."""
    millis = int(to_epoch(when) * 1000 + when.microsecond // 1000)
    return f"NM-{_base36(millis)}-{payment_id[-4:].upper()}"


def compute_expiry(billing_cycle: str, current_expiry: Optional[datetime], now: datetime) -> datetime:
    if billing_cycle == "lifetime":
        return now + LIFETIME_SPAN
    base = current_expiry if current_expiry and current_expiry > now else now
    if billing_cycle == "annual":
        return base + ANNUAL_SPAN
    return base + MONTHLY_SPAN


class BillingService:
    """
    Subscription billing over the provider registry.

    Every state change on a Payment row goes through ``process_payment`` or
    ``_close_payment``; both claim the row with a conditional UPDATE keyed on
    ``status = 'pending'`` so concurrent webhooks and polls advance it once.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        base_url: Optional[str] = None,
        default_provider: Union[ProviderType, str, None] = None,
        invoice_expiry_seconds: Optional[int] = None,
        expiry_backstop: timedelta = LOCAL_EXPIRY_BACKSTOP,
    ) -> None:
        self.registry = registry
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.default_provider = default_provider
        self.invoice_expiry_seconds = invoice_expiry_seconds or settings.invoice_expiry_seconds
        self.expiry_backstop = expiry_backstop

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def get_tiers(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in tier_catalog.get_tiers()]

    def get_tier(self, tier: str) -> Dict[str, Any]:
        return tier_catalog.get_tier(tier).to_dict()

    # ------------------------------------------------------------------
    # Invoice creation
    # ------------------------------------------------------------------

    async def create_invoice(
        self,
        pubkey: str,
        tier: str,
        apply_discount: bool = True,
        billing_cycle: str = "monthly",
    ) -> Dict[str, Any]:
        """
        Issue a Lightning invoice for a tier purchase.

        Raises:
            InvalidTierError / InvalidBillingCycleError: before any side effect.
            NotFoundError: unknown user.
            NoProviderConfigured: registry is empty.
            ProviderUnavailable / ProviderError: nothing was persisted.
        """
        info, cycle = tier_catalog.resolve_purchase(tier, billing_cycle)

        with get_session_context() as session:
            user = session.exec(select(User).where(User.pubkey == pubkey)).first()
            if user is None:
                raise NotFoundError(detail="user not found", context={"pubkey": pubkey})
            user_id = user.id
            trust = session.exec(select(TrustScore).where(TrustScore.user_id == user_id)).first()

        discount = 0
        if apply_discount and trust is not None:
            discount = tier_catalog.capped_discount(trust.discount_percent)

        amount_sats = tier_catalog.price(info.price_sats, cycle, discount)
        amount_usd = tier_catalog.price(info.price_usd, cycle, discount)

        provider = self.registry.resolve(self.default_provider)
        memo = f"NostrMaxi {info.name} - {tier_catalog.cycle_label(cycle)} Subscription"
        invoice = await provider.create_invoice(InvoiceRequest(
            amount_sats=amount_sats,
            memo=memo,
            expires_in_seconds=self.invoice_expiry_seconds,
            webhook_url=f"{self.base_url}/api/v1/payments/webhook?provider={provider.type.value}",
            metadata={
                "tier": info.tier,
                "pubkey": pubkey,
                "amountSats": amount_sats,
                "amountUsd": amount_usd,
                "billingCycle": cycle,
            },
        ))

        with get_session_context() as session:
            subscription = self._get_or_create_subscription(session, user_id)
            payment = Payment(
                subscription_id=subscription.id,
                amount_sats=amount_sats,
                amount_usd=amount_usd,
                invoice=invoice.bolt11,
                payment_hash=invoice.payment_hash,
                provider=provider.type.value,
                provider_invoice_id=invoice.provider_invoice_id,
                status=PAYMENT_PENDING,
            )
            session.add(payment)
            session.flush()
            session.add(AuditEntry(
                action="payment.created",
                entity="Payment",
                entity_id=payment.id,
                actor_pubkey=pubkey,
                details=json.dumps({
                    "tier": info.tier,
                    "billingCycle": cycle,
                    "amountSats": amount_sats,
                    "discountPercent": discount,
                    "provider": provider.type.value,
                }),
            ))
            session.commit()
            payment_id = payment.id

        logger.info(
            "Subscription invoice created: payment_id=%s tier=%s cycle=%s amount_sats=%d discount=%d provider=%s",
            payment_id, info.tier, cycle, amount_sats, discount, provider.type.value,
        )

        expires_at = invoice.expires_at or (utcnow() + timedelta(seconds=self.invoice_expiry_seconds))
        return {
            "paymentId": payment_id,
            "invoice": invoice.bolt11,
            "paymentHash": invoice.payment_hash,
            "amountSats": amount_sats,
            "amountUsd": amount_usd,
            "discountPercent": discount,
            "expiresAt": to_epoch(expires_at),
            "provider": provider.type.value,
            "billingCycle": cycle,
        }

    @staticmethod
    def _get_or_create_subscription(session, user_id: str) -> Subscription:
        subscription = session.exec(select(Subscription).where(Subscription.user_id == user_id)).first()
        if subscription is not None:
            return subscription
        subscription = Subscription(user_id=user_id, tier="FREE")
        session.add(subscription)
        try:
            session.flush()
        except IntegrityError:
            # Concurrent first purchase created it
            session.rollback()
            subscription = session.exec(select(Subscription).where(Subscription.user_id == user_id)).one()
        return subscription

    # ------------------------------------------------------------------
    # Polling path
    # ------------------------------------------------------------------

    async def check_invoice_status(self, payment_id: str) -> Dict[str, Any]:
        with get_session_context() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(detail="payment not found", context={"payment_id": payment_id})
            if payment.status in (PAYMENT_PAID, PAYMENT_EXPIRED, PAYMENT_FAILED):
                return self._status_view(session, payment)
            provider_name = payment.provider
            invoice_id = payment.provider_invoice_id
            payment_hash = payment.payment_hash
            created_at = as_utc(payment.created_at)

        provider = self.registry.get(provider_name)
        state = PaymentState.UNKNOWN
        if provider is None:
            logger.warning(
                "Issuing provider %s not registered, cannot poll payment_id=%s", provider_name, payment_id
            )
        else:
            status = await provider.get_invoice_status(invoice_id, payment_hash)
            state = status.state

        if state == PaymentState.PAID:
            self.process_payment(payment_id)
        elif state in (PaymentState.EXPIRED, PaymentState.FAILED):
            self._close_payment(payment_id, state.value)
        elif utcnow() - created_at > self.expiry_backstop:
            logger.info("Payment past local expiry, closing: payment_id=%s", payment_id)
            self._close_payment(payment_id, PAYMENT_EXPIRED)

        with get_session_context() as session:
            return self._status_view(session, session.get(Payment, payment_id))

    @staticmethod
    def _status_view(session, payment: Payment) -> Dict[str, Any]:
        view: Dict[str, Any] = {
            "status": payment.status,
            "paid": payment.status == PAYMENT_PAID,
            "provider": payment.provider,
        }
        if payment.status == PAYMENT_PAID:
            subscription = session.get(Subscription, payment.subscription_id)
            view["paidAt"] = to_iso(payment.paid_at)
            view["tier"] = subscription.tier
            view["expiresAt"] = to_iso(subscription.expires_at)
        return view

    def _close_payment(self, payment_id: str, state: str) -> bool:
        """pending → expired | failed. Returns False when the row had already moved on."""
        with get_session_context() as session:
            changed = conditional_update(
                session, Payment, payment_id,
                expected={"status": PAYMENT_PENDING},
                values={"status": state},
            )
            session.commit()
        if changed:
            logger.info("Payment closed: payment_id=%s status=%s", payment_id, state)
        return bool(changed)

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        payload: Any,
        signature: Optional[str] = None,
        provider_hint: Union[ProviderType, str, None] = None,
        raw_body: Optional[bytes] = None,
    ) -> Dict[str, bool]:
        """
        Process a provider webhook for a subscription payment.

        Returns ``{"success": bool}``. Unrecognised payloads and unknown
        invoices are dropped with ``success=False``.

        Raises:
            BadSignature: signature check failed. No state was changed.
        """
        provider = self.registry.resolve_for_webhook(payload, provider_hint)
        if provider is None:
            logger.warning("Webhook received but no matching provider found (hint=%s)", provider_hint)
            return {"success": False}

        if provider.supports_signatures and not provider.verify_webhook_signature(
            raw_body if raw_body is not None else payload, signature
        ):
            logger.warning("Invalid webhook signature: provider=%s", provider.type.value)
            raise BadSignature(detail="webhook signature mismatch", context={"provider": provider.type.value})

        event = provider.parse_webhook_event(payload)
        if event is None:
            logger.warning("Webhook payload did not match %s event format", provider.type.value)
            return {"success": False}

        with get_session_context() as session:
            payment = self._find_payment(session, event.provider_invoice_id, event.payment_hash)
            if payment is None:
                logger.info("No payment for provider invoice %s", event.provider_invoice_id)
                return {"success": False}
            if payment.provider != provider.type.value:
                logger.warning(
                    "Webhook via %s for payment_id=%s issued by %s, ignoring",
                    provider.type.value, payment.id, payment.provider,
                )
                return {"success": False}
            payment_id = payment.id
            status = payment.status
            invoice_id = payment.provider_invoice_id
            payment_hash = payment.payment_hash

        if status == PAYMENT_PAID:
            logger.info("Duplicate webhook for paid payment_id=%s", payment_id)
            return {"success": True}

        if event.state in (PaymentState.EXPIRED, PaymentState.FAILED):
            verified = await provider.get_invoice_status(invoice_id, payment_hash)
            if verified.state not in (PaymentState.EXPIRED, PaymentState.FAILED):
                logger.info(
                    "Close event not confirmed by provider: payment_id=%s state=%s",
                    payment_id, verified.state.value,
                )
                return {"success": False}
            self._close_payment(payment_id, verified.state.value)
            return {"success": True}

        if status != PAYMENT_PENDING:
            logger.error(
                "Webhook for closed payment_id=%s status=%s event_state=%s: needs operator review",
                payment_id, status, event.state,
            )
            return {"success": False}

        # The webhook body is untrusted: confirm with the provider itself
        verified = await provider.get_invoice_status(invoice_id, payment_hash)
        if verified.state != PaymentState.PAID:
            logger.info(
                "Webhook not confirmed by provider: payment_id=%s state=%s", payment_id, verified.state.value
            )
            return {"success": False}

        self.process_payment(payment_id)
        return {"success": True}

    @staticmethod
    def _find_payment(session, provider_invoice_id: str, payment_hash: Optional[str]) -> Optional[Payment]:
        conditions = [Payment.provider_invoice_id == provider_invoice_id]
        if payment_hash:
            conditions.append(Payment.payment_hash == payment_hash)
        return session.exec(select(Payment).where(or_(*conditions))).first()

    def find_payment(self, provider_invoice_id: str, payment_hash: Optional[str] = None) -> Optional[str]:
        """Payment id for a provider invoice id / payment hash, if any."""
        with get_session_context() as session:
            payment = self._find_payment(session, provider_invoice_id, payment_hash)
            return payment.id if payment is not None else None

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def process_payment(self, payment_id: str) -> Dict[str, Any]:
        """
        Confirm a paid invoice. Idempotent: a second call returns the stored
        result without writing.

        Raises:
            NotFoundError: unknown payment.
            StateConflictError: the payment is expired or failed.
        """
        with get_session_context() as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(detail="payment not found", context={"payment_id": payment_id})
            if payment.status == PAYMENT_PAID:
                return self._confirmed_result(session, payment)
            if payment.status != PAYMENT_PENDING:
                raise StateConflictError(
                    detail=f"payment is {payment.status}, cannot confirm",
                    context={"payment_id": payment_id},
                )

            now = utcnow()
            receipt = receipt_number(payment.id, now)
            claimed = conditional_update(
                session, Payment, payment_id,
                expected={"status": PAYMENT_PENDING},
                values={"status": PAYMENT_PAID, "paid_at": now, "receipt_number": receipt},
            )
            if not claimed:
                session.rollback()
                payment = session.get(Payment, payment_id, populate_existing=True)
                if payment.status == PAYMENT_PAID:
                    return self._confirmed_result(session, payment)
                raise StateConflictError(
                    detail=f"payment is {payment.status}, cannot confirm",
                    context={"payment_id": payment_id},
                )

            snapshot = self._created_snapshot(session, payment_id)
            tier = snapshot.get("tier") or "PRO"
            info = tier_catalog.TIERS.get(tier, tier_catalog.TIERS["PRO"])
            cycle = "lifetime" if info.is_lifetime else (snapshot.get("billingCycle") or "monthly")

            subscription = session.get(Subscription, payment.subscription_id)
            new_expiry = compute_expiry(cycle, as_utc(subscription.expires_at), now)
            subscription.tier = info.tier
            subscription.expires_at = new_expiry
            subscription.cancelled_at = None
            subscription.updated_at = now
            session.add(subscription)

            actor = session.get(User, subscription.user_id)
            session.add(AuditEntry(
                action="payment.confirmed",
                entity="Payment",
                entity_id=payment_id,
                actor_pubkey=actor.pubkey if actor else None,
                details=json.dumps({
                    "tier": info.tier,
                    "billingCycle": cycle,
                    "amountSats": payment.amount_sats,
                    "expiresAt": to_iso(new_expiry),
                    "receiptNumber": receipt,
                    "provider": payment.provider,
                }),
            ))
            session.commit()

        logger.info(
            "Payment confirmed: payment_id=%s tier=%s cycle=%s expires_at=%s receipt=%s",
            payment_id, info.tier, cycle, to_iso(new_expiry), receipt,
        )
        return {"tier": info.tier, "expiresAt": to_iso(new_expiry), "receiptNumber": receipt}

    @staticmethod
    def _confirmed_result(session, payment: Payment) -> Dict[str, Any]:
        subscription = session.get(Subscription, payment.subscription_id)
        return {
            "tier": subscription.tier,
            "expiresAt": to_iso(subscription.expires_at),
            "receiptNumber": payment.receipt_number,
        }

    @staticmethod
    def _created_snapshot(session, payment_id: str) -> Dict[str, Any]:
        return _audit_details(session, "payment.created", payment_id)

    # ------------------------------------------------------------------
    # History & receipts
    # ------------------------------------------------------------------

    def get_payment_history(self, pubkey: str, limit: int = 20) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), HISTORY_MAX))
        with get_session_context() as session:
            stmt = (
                select(Payment)
                .join(Subscription, Subscription.id == Payment.subscription_id)
                .join(User, User.id == Subscription.user_id)
                .where(User.pubkey == pubkey)
                .order_by(Payment.created_at.desc())
                .limit(limit)
            )
            return [
                {
                    "id": p.id,
                    "amountSats": p.amount_sats,
                    "amountUsd": p.amount_usd,
                    "method": p.method,
                    "status": p.status,
                    "receiptNumber": p.receipt_number,
                    "createdAt": to_iso(p.created_at),
                    "paidAt": to_iso(p.paid_at),
                    "provider": p.provider,
                }
                for p in session.exec(stmt).all()
            ]

    def get_receipt(self, pubkey: str, payment_id: str) -> Dict[str, Any]:
        with get_session_context() as session:
            row = session.exec(
                select(Payment, User)
                .join(Subscription, Subscription.id == Payment.subscription_id)
                .join(User, User.id == Subscription.user_id)
                .where(Payment.id == payment_id, User.pubkey == pubkey, Payment.status == PAYMENT_PAID)
            ).first()
            if row is None:
                raise NotFoundError(detail="receipt not found", context={"payment_id": payment_id})
            payment, user = row

            confirmed = _audit_details(session, "payment.confirmed", payment_id)
            subscription = session.get(Subscription, payment.subscription_id)
            tier = confirmed.get("tier") or subscription.tier
            info = tier_catalog.TIERS.get(tier, tier_catalog.TIERS["PRO"])
            cycle = confirmed.get("billingCycle")
            label = "Lifetime" if info.is_lifetime else ("Annual" if cycle == "annual" else "Monthly")

            return {
                "receiptNumber": payment.receipt_number,
                "date": to_iso(payment.paid_at),
                "item": f"{info.name} Subscription ({label})",
                "description": info.description,
                "amountSats": payment.amount_sats,
                "amountUsd": payment.amount_usd,
                "paymentMethod": "Lightning Network",
                "paymentHash": payment.payment_hash,
                "provider": payment.provider,
                "customer": {"npub": user.npub, "pubkey": user.pubkey},
            }


def _audit_details(session, action: str, entity_id: str) -> Dict[str, Any]:
    entry = session.exec(
        select(AuditEntry)
        .where(AuditEntry.action == action, AuditEntry.entity_id == entity_id)
        .order_by(AuditEntry.id.desc())
    ).first()
    if entry is None or not entry.details:
        return {}
    try:
        return json.loads(entry.details)
    except ValueError:
        logger.error("Corrupt audit details: action=%s entity_id=%s", action, entity_id)
        return {}


_billing_service: Optional[BillingService] = None


def get_billing_service() -> BillingService:
    """Application-wide instance (FastAPI dependency)."""
    global _billing_service
    if _billing_service is None:
        _billing_service = BillingService(
            registry=get_provider_registry(),
            default_provider=settings.payments_provider,
        )
    return _billing_service
