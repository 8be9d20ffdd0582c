"""
Marketplace Router
==================

Split-settlement endpoints for NIP-05 name sales.

- POST  /api/v1/marketplace/listings/{id}/buy                       (auth)
- POST  /api/v1/marketplace/auctions/{id}/settle                    (auth)
- GET   /api/v1/marketplace/transactions/{id}                       (auth: buyer, seller, admin)
- PATCH /api/v1/marketplace/seller/lightning-address                (auth)
- POST  /api/v1/marketplace/webhook                                 (provider callback)
- POST  /api/v1/marketplace/admin/transactions/{id}/retry-payout    (admin)
- GET   /api/v1/marketplace/admin/transactions                      (admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.auth.api_key_auth import AuthenticatedUser, get_current_user, require_admin
from app.core.errors import NotFoundError, PaymentEngineError, SignatureError
from app.routers.payments import provider_signature, read_webhook_body
from app.services.split_payment_service import SplitPaymentService, get_split_payment_service

logger = logging.getLogger(__name__)

router = APIRouter()


class LightningAddressRequest(BaseModel):
    lightningAddress: str = Field(..., min_length=3, max_length=255)


@router.post("/listings/{listing_id}/buy")
async def buy_listing(
    listing_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    return await marketplace.create_marketplace_invoice(listing_id, user.pubkey)


@router.post("/auctions/{auction_id}/settle")
async def settle_auction(
    auction_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    return await marketplace.create_auction_settlement_invoice(auction_id, user.pubkey)


@router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    """Transaction state, re-polling the provider while pending. Visible to its parties and admins."""
    view = marketplace.get_transaction(transaction_id)
    if not user.is_admin and user.pubkey not in (view["buyerPubkey"], view["sellerPubkey"]):
        raise NotFoundError(detail="transaction not visible to caller", context={"transaction_id": transaction_id})
    return await marketplace.check_transaction_status(transaction_id)


@router.patch("/seller/lightning-address")
async def set_lightning_address(
    body: LightningAddressRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    return marketplace.set_seller_lightning_address(user.pubkey, body.lightningAddress)


@router.post("/webhook")
async def marketplace_webhook(
    request: Request,
    provider: Optional[str] = Query(None),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    raw_body, payload = await read_webhook_body(request)
    if payload is None:
        return {"handled": False}

    try:
        return await marketplace.handle_marketplace_webhook(
            payload,
            signature=provider_signature(request),
            provider_hint=provider or request.headers.get("x-payment-provider"),
            raw_body=raw_body,
        )
    except SignatureError:
        return JSONResponse(status_code=400, content={"handled": False, "error": "invalid signature"})
    except PaymentEngineError as exc:
        logger.error("Marketplace webhook failed: code=%s detail=%s", exc.code, exc.detail)
        return {"handled": False}


@router.post("/admin/transactions/{transaction_id}/retry-payout")
async def retry_payout(
    transaction_id: str,
    _admin: AuthenticatedUser = Depends(require_admin),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    return await marketplace.admin_retry_payout(transaction_id)


@router.get("/admin/transactions")
async def list_transactions(
    limit: int = Query(100, ge=1, le=200),
    _admin: AuthenticatedUser = Depends(require_admin),
    marketplace: SplitPaymentService = Depends(get_split_payment_service),
):
    return marketplace.get_transaction_history(limit=limit)
