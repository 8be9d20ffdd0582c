"""
Payments Router
===============

Subscription billing endpoints and the shared provider webhook ingress.

- GET  /api/v1/payments/tiers
- POST /api/v1/payments/invoice            (auth)
- GET  /api/v1/payments/invoice/{id}
- POST /api/v1/payments/webhook?provider=  (provider callback)
- GET  /api/v1/payments/history            (auth)
- GET  /api/v1/payments/receipt/{id}       (auth)
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.auth.api_key_auth import AuthenticatedUser, get_current_user
from app.core.errors import PaymentEngineError, SignatureError
from app.services.billing_service import BillingService, get_billing_service
from app.services.split_payment_service import SplitPaymentService, get_split_payment_service

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateInvoiceRequest(BaseModel):
    tier: str = Field(..., min_length=1, max_length=32)
    applyWotDiscount: bool = True
    billingCycle: str = "monthly"


def provider_signature(request: Request) -> Optional[str]:
    return request.headers.get("btcpay-sig") or request.headers.get("x-webhook-signature")


async def read_webhook_body(request: Request):
    """Raw body bytes plus the parsed JSON payload (None when not JSON)."""
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError:
        payload = None
    return raw_body, payload


@router.get("/tiers")
async def list_tiers(billing: BillingService = Depends(get_billing_service)) -> List[Dict[str, Any]]:
    """Public tier catalog."""
    return billing.get_tiers()


@router.post("/invoice")
async def create_invoice(
    body: CreateInvoiceRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
):
    return await billing.create_invoice(
        user.pubkey,
        body.tier,
        apply_discount=body.applyWotDiscount,
        billing_cycle=body.billingCycle,
    )


@router.get("/invoice/{payment_id}")
async def get_invoice_status(payment_id: str, billing: BillingService = Depends(get_billing_service)):
    """Polling endpoint. Public: the payment id is an unguessable handle."""
    return await billing.check_invoice_status(payment_id)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    provider: Optional[str] = Query(None),
    billing: BillingService = Depends(get_billing_service),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    """
    Shared provider callback. Subscription payments are tried first, then
    marketplace transactions.

    Always 200 ``{success}`` so providers do not retry forever, except on a
    bad signature (400).
    """
    raw_body, payload = await read_webhook_body(request)
    if payload is None:
        return {"success": False}

    signature = provider_signature(request)
    hint = provider or request.headers.get("x-payment-provider")

    try:
        result = await billing.handle_webhook(payload, signature=signature, provider_hint=hint, raw_body=raw_body)
        if result.get("success"):
            return {"success": True}
        outcome = await marketplace.handle_marketplace_webhook(
            payload, signature=signature, provider_hint=hint, raw_body=raw_body
        )
        return {"success": bool(outcome.get("handled"))}
    except SignatureError:
        return JSONResponse(status_code=400, content={"success": False, "error": "invalid signature"})
    except PaymentEngineError as exc:
        logger.error("Webhook processing failed: code=%s detail=%s", exc.code, exc.detail)
        return {"success": False}


@router.get("/history")
async def payment_history(
    limit: int = Query(20, ge=1, le=100),
    user: AuthenticatedUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.get_payment_history(user.pubkey, limit=limit)


@router.get("/receipt/{payment_id}")
async def get_receipt(
    payment_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    billing: BillingService = Depends(get_billing_service),
):
    return billing.get_receipt(user.pubkey, payment_id)
