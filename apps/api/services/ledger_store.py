"""Persistence for account balances and the append-only transaction log.

No business rules live here beyond the integrity checks that keep the log
consistent with the stored balance. Callers own the transaction scope: nothing
in this module commits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import TRANSACTION_KINDS, CreditTransaction
from services.errors import AccountNotFoundError, LedgerValidationError


@dataclass
class TransactionRecord:
    account_id: str
    kind: str
    amount: int
    balance: int
    description: str
    operation_type: Optional[str] = None
    resource_id: Optional[str] = None


class LedgerStore:
    """Account balance and transaction log access on one session."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    @property
    def db(self) -> AsyncSession:
        return self._db

    async def get_account(self, account_id: str) -> Account:
        result = await self._db.execute(select(Account).where(Account.id == account_id))
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def lock_account(self, account_id: str) -> Account:
        """Load the account row under an exclusive row lock (no-op on SQLite)."""
        result = await self._db.execute(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def get_balance(self, account_id: str) -> int:
        result = await self._db.execute(select(Account.credits).where(Account.id == account_id))
        credits = result.scalar_one_or_none()
        if credits is None:
            raise AccountNotFoundError(account_id)
        return int(credits)

    async def swap_balance(self, account_id: str, expected: int, new_balance: int) -> bool:
        """Compare-and-swap the stored balance. False when another writer got there first."""
        result = await self._db.execute(
            update(Account)
            .where(Account.id == account_id, Account.credits == expected)
            .values(credits=new_balance, updated_at=datetime.now(timezone.utc))
        )
        return result.rowcount == 1

    async def _next_sequence(self, account_id: str) -> int:
        result = await self._db.execute(
            select(func.coalesce(func.max(CreditTransaction.sequence), 0)).where(
                CreditTransaction.account_id == account_id
            )
        )
        return int(result.scalar() or 0) + 1

    async def append_transaction(self, record: TransactionRecord) -> CreditTransaction:
        """Insert an immutable transaction row whose snapshot matches the stored balance."""
        if record.kind not in TRANSACTION_KINDS:
            raise LedgerValidationError(f"Unknown transaction kind '{record.kind}'")
        if record.kind == "usage" and record.amount >= 0:
            raise LedgerValidationError("usage transactions must carry a negative amount")
        if record.kind != "usage" and record.amount <= 0:
            raise LedgerValidationError(f"{record.kind} transactions must carry a positive amount")

        stored = await self.get_balance(record.account_id)
        if stored != record.balance:
            raise LedgerValidationError(
                f"Transaction balance {record.balance} does not match stored balance {stored} "
                f"for account {record.account_id}"
            )

        entry = CreditTransaction(
            account_id=record.account_id,
            sequence=await self._next_sequence(record.account_id),
            kind=record.kind,
            amount=int(record.amount),
            balance=int(record.balance),
            description=record.description,
            operation_type=record.operation_type,
            resource_id=record.resource_id,
        )
        self._db.add(entry)
        await self._db.flush()
        return entry

    async def list_transactions(
        self,
        account_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CreditTransaction]:
        """Newest-first history. ``limit=None`` returns the full log."""
        query = (
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.sequence.desc())
            .offset(max(int(offset), 0))
        )
        if limit is not None:
            query = query.limit(max(int(limit), 0))
        result = await self._db.execute(query)
        return list(result.scalars().all())

    async def replay_order(self, account_id: str) -> List[CreditTransaction]:
        """Full log in application order, oldest first."""
        result = await self._db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.sequence.asc())
        )
        return list(result.scalars().all())
