"""Stripe payment flow: PaymentIntent creation and the webhook that credits purchases."""

from __future__ import annotations

import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import require_stripe_secret_key, settings
from models.account import Account
from models.credit_transaction import CreditTransaction
from services.credits import CreditLedger
from services.errors import AccountNotFoundError, DuplicateTransactionError, NotFoundError
from services.locks import KeyedLocks, payment_locks
from services.pricing import CreditPackageCatalog

logger = logging.getLogger(__name__)

CREDIT_PURCHASE_OPERATION = "credit_purchase"
PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"


class WebhookSignatureError(ValueError):
    """Webhook payload could not be verified."""


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def amount_in_cents(price: Decimal) -> int:
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentService:
    def __init__(self, db: AsyncSession, *, locks: Optional[KeyedLocks] = None) -> None:
        self._db = db
        self.ledger = CreditLedger(db)
        self.packages = CreditPackageCatalog(db)
        self.locks = locks or payment_locks

    def _stripe(self) -> Any:
        stripe.api_key = require_stripe_secret_key()
        return stripe

    async def _ensure_customer(self, account: Account) -> str:
        if account.stripe_customer_id:
            return account.stripe_customer_id

        client = self._stripe()
        customer = await asyncio.to_thread(
            client.Customer.create,
            email=account.email,
            name=account.name or None,
            metadata={"account_id": account.id},
        )
        account.stripe_customer_id = str(_field(customer, "id"))
        await self._db.commit()
        logger.info("stripe_customer_created account=%s customer=%s", account.id, account.stripe_customer_id)
        return account.stripe_customer_id

    async def create_payment_intent(self, account: Account, package_id: str) -> Dict[str, Any]:
        """Create a PaymentIntent for a credit package; the webhook performs the credit."""
        package = await self.packages.get_package(package_id)
        customer_id = await self._ensure_customer(account)

        client = self._stripe()
        intent = await asyncio.to_thread(
            client.PaymentIntent.create,
            amount=amount_in_cents(package.price),
            currency=str(package.currency).lower(),
            customer=customer_id,
            automatic_payment_methods={"enabled": True},
            metadata={
                "account_id": account.id,
                "package_id": package.id,
                "credits": str(package.credits),
            },
        )
        logger.info(
            "payment_intent_created account=%s package=%s intent=%s",
            account.id,
            package.id,
            _field(intent, "id"),
        )
        return {
            "payment_intent_id": _field(intent, "id"),
            "client_secret": _field(intent, "client_secret"),
            "amount": amount_in_cents(package.price),
            "currency": package.currency,
            "package_id": package.id,
            "credits": package.credits,
        }

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        secret = settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            raise WebhookSignatureError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_signature_invalid error=%s", exc)
            raise WebhookSignatureError("Invalid Stripe signature") from exc
        except ValueError as exc:
            logger.warning("stripe_webhook_payload_invalid error=%s", exc)
            raise WebhookSignatureError("Invalid webhook payload") from exc

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.construct_event(payload, signature)
        event_id = _field(event, "id")
        event_type = _field(event, "type")
        logger.info("stripe_webhook_received event=%s type=%s", event_id, event_type)

        if event_type != PAYMENT_SUCCEEDED_EVENT:
            return {"received": True, "handled": False, "event_type": event_type}

        intent = _field(_field(event, "data"), "object")
        return await self.apply_successful_payment(intent, event_id=event_id)

    async def apply_successful_payment(self, intent: Any, *, event_id: Optional[str] = None) -> Dict[str, Any]:
        """Credit a succeeded PaymentIntent exactly once, keyed on the intent id."""
        intent_id = _field(intent, "id")
        metadata = _field(intent, "metadata") or {}
        account_id = _field(metadata, "account_id")
        package_id = _field(metadata, "package_id")
        raw_credits = _field(metadata, "credits")

        if not intent_id or not account_id or not package_id:
            logger.error(
                "stripe_payment_metadata_missing event=%s intent=%s account=%s package=%s",
                event_id,
                intent_id,
                account_id,
                package_id,
            )
            return {"received": True, "handled": False, "reason": "missing_metadata"}

        try:
            credits = int(raw_credits) if raw_credits is not None else None
        except (TypeError, ValueError):
            credits = None
        if credits is None:
            try:
                credits = int((await self.packages.get_package(package_id)).credits)
            except NotFoundError:
                logger.error("stripe_payment_unknown_package intent=%s package=%s", intent_id, package_id)
                return {"received": True, "handled": False, "reason": "unknown_package"}
        if credits <= 0:
            logger.error("stripe_payment_invalid_credits intent=%s credits=%s", intent_id, raw_credits)
            return {"received": True, "handled": False, "reason": "invalid_credits"}

        async with self.locks.hold(str(intent_id)):
            if await self._already_credited(str(intent_id)):
                logger.info("stripe_payment_duplicate intent=%s account=%s", intent_id, account_id)
                return {"received": True, "handled": True, "duplicate": True}

            try:
                entry = await self.ledger.credit(
                    str(account_id),
                    credits,
                    f"Purchase of {credits} credits ({package_id})",
                    kind="purchase",
                    operation_type=CREDIT_PURCHASE_OPERATION,
                    resource_id=str(intent_id),
                )
            except AccountNotFoundError:
                logger.error("stripe_payment_account_missing intent=%s account=%s", intent_id, account_id)
                return {"received": True, "handled": False, "reason": "account_not_found"}
            except DuplicateTransactionError:
                # Another worker credited this intent after our check.
                logger.info("stripe_payment_duplicate intent=%s account=%s", intent_id, account_id)
                return {"received": True, "handled": True, "duplicate": True}

        return {
            "received": True,
            "handled": True,
            "duplicate": False,
            "account_id": str(account_id),
            "credits_added": credits,
            "balance_after": entry.balance,
        }

    async def _already_credited(self, intent_id: str) -> bool:
        result = await self._db.execute(
            select(CreditTransaction.id)
            .where(
                CreditTransaction.kind == "purchase",
                CreditTransaction.resource_id == intent_id,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
