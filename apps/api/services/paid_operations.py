"""Charging helpers for paid features (upload, training, prediction, reports).

A paid feature looks up the catalog price, checks the balance, does its work
and only then debits. If the debit is refused after the work was done the
side effect is compensated so nothing is handed out for free.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from services.credits import CreditLedger
from services.errors import InsufficientFundsError
from services.pricing import OperationCostCatalog

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ChargeResult:
    operation_id: str
    charged: int
    balance_after: int
    resource_id: Optional[str] = None


@dataclass
class PaidOperationResult(Generic[T]):
    value: T
    charge: ChargeResult


async def charge_operation(
    db: AsyncSession,
    account_id: str,
    operation_id: str,
    *,
    description: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> ChargeResult:
    """Debit the catalog price of ``operation_id``. Raises InsufficientFundsError when short."""
    catalog = OperationCostCatalog(db)
    ledger = CreditLedger(db)
    cost = await catalog.get_cost(operation_id)
    if cost == 0:
        return ChargeResult(
            operation_id=operation_id,
            charged=0,
            balance_after=await ledger.get_balance(account_id),
            resource_id=resource_id,
        )

    debited = await ledger.debit(
        account_id,
        cost,
        description or f"Charge for {operation_id}",
        operation_type=operation_id,
        resource_id=resource_id,
    )
    balance = await ledger.get_balance(account_id)
    if not debited:
        raise InsufficientFundsError(required=cost, available=balance, operation_id=operation_id)
    return ChargeResult(operation_id=operation_id, charged=cost, balance_after=balance, resource_id=resource_id)


async def run_paid_operation(
    db: AsyncSession,
    account_id: str,
    operation_id: str,
    perform: Callable[[], Awaitable[T]],
    compensate: Callable[[T], Awaitable[Any]],
    *,
    description: Optional[str] = None,
    resource_id_of: Optional[Callable[[T], Optional[str]]] = None,
) -> PaidOperationResult[T]:
    """Price check, perform, debit; undo ``perform`` through ``compensate`` if the debit fails."""
    catalog = OperationCostCatalog(db)
    ledger = CreditLedger(db)

    cost = await catalog.get_cost(operation_id)
    available = await ledger.get_balance(account_id)
    if available < cost:
        raise InsufficientFundsError(required=cost, available=available, operation_id=operation_id)

    value = await perform()
    resource_id = resource_id_of(value) if resource_id_of else None

    try:
        charge = await charge_operation(
            db,
            account_id,
            operation_id,
            description=description,
            resource_id=resource_id,
        )
    except Exception:
        logger.warning(
            "paid_operation_compensated account=%s operation=%s resource=%s",
            account_id,
            operation_id,
            resource_id,
        )
        await compensate(value)
        raise

    return PaidOperationResult(value=value, charge=charge)
