"""Credits router: balance, history, catalogs and the charge endpoint."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.account import Account
from routers.auth_scope import get_current_account
from routers.rate_limit import rate_limit
from services.credits import CreditLedger, serialize_transaction
from services.paid_operations import charge_operation
from services.pricing import CreditPackageCatalog, OperationCostCatalog, serialize_operation, serialize_package

router = APIRouter()
logger = logging.getLogger(__name__)


class ChargeRequest(BaseModel):
    operation_id: str = Field(min_length=1, max_length=64)
    resource_id: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=255)


@router.get("")
async def credits_summary(
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    ledger = CreditLedger(db)
    transactions = await ledger.recent_transactions(account.id)
    operations = await OperationCostCatalog(db).list_operations()
    return {
        "account_id": account.id,
        "balance": await ledger.get_balance(account.id),
        "transactions": [serialize_transaction(entry) for entry in transactions],
        "operations": [serialize_operation(operation) for operation in operations],
    }


@router.get("/transactions")
async def list_transactions(
    limit: int = Query(default=20, ge=1),
    offset: int = Query(default=0, ge=0),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    page_size = min(limit, max(int(settings.CREDIT_HISTORY_LIMIT), 1))
    entries = await CreditLedger(db).recent_transactions(account.id, limit=page_size, offset=offset)
    return {
        "limit": page_size,
        "offset": offset,
        "transactions": [serialize_transaction(entry) for entry in entries],
    }


@router.get("/operations")
async def list_operations(
    _account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    operations = await OperationCostCatalog(db).list_operations()
    return {"operations": [serialize_operation(operation) for operation in operations]}


@router.get("/packages")
async def list_packages(db: AsyncSession = Depends(get_db)):
    packages = await CreditPackageCatalog(db).list_packages()
    return {"packages": [serialize_package(package) for package in packages]}


@router.post("/charge")
async def charge(
    request: ChargeRequest,
    _rate_limit: None = Depends(rate_limit("credits_charge", limit=120, window_seconds=60)),
    account: Account = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Debit the catalog price of an operation. 402 when the balance cannot cover it."""
    account_id = account.id
    result = await charge_operation(
        db,
        account_id,
        request.operation_id,
        description=request.description,
        resource_id=request.resource_id,
    )
    return {
        "ok": True,
        "account_id": account_id,
        "operation_id": result.operation_id,
        "charged": result.charged,
        "balance_after": result.balance_after,
        "resource_id": result.resource_id,
    }
