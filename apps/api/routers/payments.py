"""Payments router: Stripe PaymentIntent creation and webhook."""

from __future__ import annotations

import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account
from routers.rate_limit import rate_limit
from services.payments import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


class PaymentIntentRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=64)


@router.post("/intent")
async def create_payment_intent(
    request: PaymentIntentRequest,
    _rate_limit: None = Depends(rate_limit("payments_intent", limit=20, window_seconds=3600)),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to buy credits.")
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")

    account_id = account.id
    try:
        return await PaymentService(db).create_payment_intent(account, request.package_id)
    except stripe.StripeError as exc:
        logger.exception("payment_intent_failed account=%s package=%s", account_id, request.package_id)
        raise HTTPException(status_code=502, detail="Payment provider error. Try again.") from exc


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Stripe delivers here; invalid signatures are rejected with 400."""
    payload = await request.body()
    return await PaymentService(db).handle_webhook(payload, stripe_signature)
