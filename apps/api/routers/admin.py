"""Admin router: catalog maintenance, account inspection, refunds and reconciliation scans."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import require_admin
from services.credits import CreditLedger, serialize_transaction
from services.pricing import CreditPackageCatalog, OperationCostCatalog, serialize_operation
from services.reconciliation import ReconciliationService
from services.welcome_bonus import WelcomeBonusPolicy, normalize_email

router = APIRouter()
logger = logging.getLogger(__name__)


class OperationUpdateRequest(BaseModel):
    credit_cost: Optional[int] = Field(default=None, ge=0, le=100000)
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class RefundRequest(BaseModel):
    amount: int = Field(ge=1, le=100000)
    reason: str = Field(min_length=1, max_length=255)
    resource_id: Optional[str] = Field(default=None, max_length=255)


def _account_payload(account: Account) -> dict:
    return {
        "account_id": account.id,
        "email": account.email,
        "name": account.name,
        "credits": int(account.credits or 0),
        "has_received_bonus": bool(account.has_received_bonus),
        "bonus_emails": [str(item) for item in (account.bonus_emails or [])],
        "is_admin": bool(account.is_admin),
        "created_at": account.created_at.isoformat() if account.created_at else None,
    }


@router.post("/credits/initialize")
async def initialize_credit_catalog(
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    operations_added = await OperationCostCatalog(db).initialize_defaults()
    packages_added = await CreditPackageCatalog(db).initialize_defaults()
    validation = await OperationCostCatalog(db).validate()
    logger.info(
        "credit_catalog_initialized admin=%s operations_added=%s packages_added=%s",
        admin.id,
        operations_added,
        packages_added,
    )
    return {
        "operations_added": operations_added,
        "packages_added": packages_added,
        **validation,
    }


@router.patch("/operations/{operation_id}")
async def update_operation(
    operation_id: str,
    request: OperationUpdateRequest,
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        operation = await OperationCostCatalog(db).update_operation(
            operation_id,
            credit_cost=request.credit_cost,
            name=request.name,
            description=request.description,
            is_active=request.is_active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    logger.info("operation_cost_edited admin=%s operation=%s", admin.id, operation_id)
    return serialize_operation(operation)


@router.get("/accounts/{account_id}")
async def get_account(
    account_id: str,
    _admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    ledger = CreditLedger(db)
    account = await ledger.store.get_account(account_id)
    return {
        "account": _account_payload(account),
        "statistics": await ledger.statistics(account_id),
    }


@router.get("/accounts/{account_id}/transactions")
async def get_account_transactions(
    account_id: str,
    _admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Full, uncapped history for debugging."""
    entries = await CreditLedger(db).full_history(account_id)
    return {
        "account_id": account_id,
        "count": len(entries),
        "transactions": [serialize_transaction(entry) for entry in entries],
    }


@router.post("/accounts/{account_id}/refund")
async def refund_account(
    account_id: str,
    request: RefundRequest,
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    admin_id = admin.id
    entry = await CreditLedger(db).credit(
        account_id,
        request.amount,
        f"Refund: {request.reason}",
        kind="refund",
        resource_id=request.resource_id,
    )
    logger.info("credit_refund_issued admin=%s account=%s amount=%s", admin_id, account_id, request.amount)
    return {"ok": True, "transaction": serialize_transaction(entry)}


@router.delete("/burned-emails/{email}")
async def remove_burned_email(
    email: str,
    admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Let a wrongly burned email receive the welcome bonus again."""
    admin_id = admin.id
    try:
        removed = await WelcomeBonusPolicy(db).remove_burned_email(email)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if not removed:
        raise HTTPException(status_code=404, detail="Email is not in the burned registry.")
    logger.warning("burned_email_lifted admin=%s email=%s entries=%s", admin_id, normalize_email(email), removed)
    return {"ok": True, "email": normalize_email(email), "removed": removed}


@router.post("/reconciliation/missing-bonuses")
async def reconcile_missing_bonuses(
    _admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    report = await ReconciliationService(db).grant_missing_bonuses()
    return report.to_dict()


@router.post("/reconciliation/duplicate-bonuses")
async def reconcile_duplicate_bonuses(
    _admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    report = await ReconciliationService(db).remove_duplicate_bonuses()
    return report.to_dict()


@router.post("/reconciliation/burned-email-duplicates")
async def reconcile_burned_email_duplicates(
    _admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    report = await ReconciliationService(db).dedupe_burned_emails()
    return report.to_dict()


@router.post("/reconciliation/balance-drift")
async def reconcile_balance_drift(
    account_id: Optional[str] = Query(default=None),
    _admin: Account = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    report = await ReconciliationService(db).find_balance_drift(account_id=account_id)
    return report.to_dict()
