"""Credit ledger: the only code path allowed to change an account balance."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_transaction import CreditTransaction
from services.errors import DuplicateTransactionError, LedgerError, LedgerValidationError, StorageError
from services.ledger_store import LedgerStore, TransactionRecord
from services.locks import KeyedLocks, account_locks

logger = logging.getLogger(__name__)

CREDIT_KINDS = ("purchase", "refund", "bonus")


class BalanceRaceError(StorageError):
    """The compare-and-swap on the balance lost against a concurrent writer."""


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "sequence": entry.sequence,
        "kind": entry.kind,
        "amount": entry.amount,
        "balance": entry.balance,
        "description": entry.description,
        "operation_type": entry.operation_type,
        "resource_id": entry.resource_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class CreditLedger:
    """Atomic debit/credit on top of a request-scoped session.

    Every mutation runs under the per-account lock, re-reads the balance with
    the row locked, swaps it only if it is still the value that was read, and
    appends the matching transaction row before committing. Either both writes
    land or neither does.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        locks: Optional[KeyedLocks] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self._db = db
        self.store = LedgerStore(db)
        self.locks = locks or account_locks
        retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
        self._max_retries = max(int(retries), 1)

    async def get_balance(self, account_id: str) -> int:
        return await self.store.get_balance(account_id)

    async def has_sufficient_balance(self, account_id: str, amount: int) -> bool:
        return await self.get_balance(account_id) >= int(amount)

    async def debit(
        self,
        account_id: str,
        amount: int,
        description: str,
        operation_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> bool:
        """Charge ``amount`` credits. False (and no side effects) when funds are short."""
        amount = int(amount)
        if amount <= 0:
            raise ValueError("debit amount must be greater than 0")
        entry = await self._mutate(
            account_id,
            -amount,
            kind="usage",
            description=description,
            operation_type=operation_type,
            resource_id=resource_id,
        )
        return entry is not None

    async def credit(
        self,
        account_id: str,
        amount: int,
        description: str,
        kind: str = "purchase",
        operation_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> CreditTransaction:
        """Add ``amount`` credits and return the recorded transaction."""
        amount = int(amount)
        if amount <= 0:
            raise ValueError("credit amount must be greater than 0")
        if kind not in CREDIT_KINDS:
            raise ValueError(f"credit kind must be one of {', '.join(CREDIT_KINDS)}")
        entry = await self._mutate(
            account_id,
            amount,
            kind=kind,
            description=description,
            operation_type=operation_type,
            resource_id=resource_id,
        )
        if entry is None:
            raise LedgerValidationError(f"Credit of {amount} produced a negative balance for {account_id}")
        return entry

    async def post_locked(
        self,
        account: Account,
        delta: int,
        *,
        kind: str,
        description: str,
        operation_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> Optional[CreditTransaction]:
        """Apply ``delta`` to an account already locked by the caller. Does not commit.

        Returns None when the result would be negative.
        """
        current = int(account.credits)
        new_balance = current + int(delta)
        if new_balance < 0:
            return None
        if not await self.store.swap_balance(account.id, current, new_balance):
            raise BalanceRaceError(f"Balance of account {account.id} changed concurrently")
        return await self.store.append_transaction(
            TransactionRecord(
                account_id=account.id,
                kind=kind,
                amount=int(delta),
                balance=new_balance,
                description=description,
                operation_type=operation_type,
                resource_id=resource_id,
            )
        )

    async def _mutate(
        self,
        account_id: str,
        delta: int,
        *,
        kind: str,
        description: str,
        operation_type: Optional[str],
        resource_id: Optional[str],
    ) -> Optional[CreditTransaction]:
        async with self.locks.hold(account_id):
            for attempt in range(1, self._max_retries + 1):
                try:
                    account = await self.store.lock_account(account_id)
                    entry = await self.post_locked(
                        account,
                        delta,
                        kind=kind,
                        description=description,
                        operation_type=operation_type,
                        resource_id=resource_id,
                    )
                    if entry is None:
                        available = int(account.credits)
                        await self._db.rollback()
                        logger.info(
                            "credit_debit_rejected account=%s amount=%s available=%s operation=%s",
                            account_id,
                            -delta,
                            available,
                            operation_type,
                        )
                        return None
                    await self._db.commit()
                except BalanceRaceError:
                    await self._db.rollback()
                    logger.warning(
                        "credit_balance_race account=%s attempt=%s/%s", account_id, attempt, self._max_retries
                    )
                    continue
                except LedgerError:
                    await self._db.rollback()
                    raise
                except IntegrityError as exc:
                    await self._db.rollback()
                    if kind == "purchase" and resource_id:
                        # Unique per purchase resource id across all workers.
                        raise DuplicateTransactionError(resource_id) from exc
                    logger.exception("credit_storage_failure account=%s kind=%s", account_id, kind)
                    raise StorageError("Could not persist credit transaction") from exc
                except SQLAlchemyError as exc:
                    await self._db.rollback()
                    logger.exception("credit_storage_failure account=%s kind=%s", account_id, kind)
                    raise StorageError("Could not persist credit transaction") from exc

                logger.info(
                    "credit_%s account=%s amount=%s balance=%s operation=%s resource=%s",
                    kind,
                    account_id,
                    entry.amount,
                    entry.balance,
                    operation_type,
                    resource_id,
                )
                return entry

        raise StorageError(f"Balance of account {account_id} kept changing; retries exhausted")

    async def recent_transactions(
        self,
        account_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        """User-facing history, capped at CREDIT_HISTORY_LIMIT rows."""
        cap = max(int(settings.CREDIT_HISTORY_LIMIT), 1)
        page_size = cap if limit is None else min(max(int(limit), 1), cap)
        return await self.store.list_transactions(account_id, limit=page_size, offset=offset)

    async def full_history(self, account_id: str) -> List[CreditTransaction]:
        await self.store.get_account(account_id)
        return await self.store.list_transactions(account_id, limit=None)

    async def statistics(self, account_id: str) -> Dict[str, int]:
        result = await self._db.execute(
            select(
                func.coalesce(
                    func.sum(case((CreditTransaction.kind == "usage", -CreditTransaction.amount), else_=0)), 0
                ),
                func.coalesce(
                    func.sum(case((CreditTransaction.kind == "purchase", CreditTransaction.amount), else_=0)), 0
                ),
                func.coalesce(
                    func.sum(case((CreditTransaction.kind == "bonus", CreditTransaction.amount), else_=0)), 0
                ),
                func.coalesce(
                    func.sum(case((CreditTransaction.kind == "refund", CreditTransaction.amount), else_=0)), 0
                ),
                func.count(CreditTransaction.id),
            ).where(CreditTransaction.account_id == account_id)
        )
        spent, purchased, bonuses, refunds, count = result.one()
        return {
            "total_spent": int(spent or 0),
            "total_purchased": int(purchased or 0),
            "total_bonuses": int(bonuses or 0),
            "total_refunded": int(refunds or 0),
            "transaction_count": int(count or 0),
        }
