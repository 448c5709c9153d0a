"""Account lifecycle hooks: creation grants the welcome bonus, deletion burns the email."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.credit_transaction import CreditTransaction
from services.errors import AccountNotFoundError, StorageError
from services.welcome_bonus import WelcomeBonusPolicy, normalize_email

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, db: AsyncSession, bonus_policy: Optional[WelcomeBonusPolicy] = None) -> None:
        self._db = db
        self.bonus_policy = bonus_policy or WelcomeBonusPolicy(db)

    async def get_account(self, account_id: str) -> Account:
        return await self.bonus_policy.ledger.store.get_account(account_id)

    async def find_by_email(self, email: str) -> Optional[Account]:
        result = await self._db.execute(select(Account).where(Account.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def create_account(self, account_id: str, email: str, name: Optional[str] = None) -> Tuple[Account, bool]:
        """Create the account with an explicit zero balance, then run the welcome bonus."""
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("email is required")

        account = Account(
            id=account_id,
            email=normalized,
            name=name,
            credits=0,
            has_received_bonus=False,
            bonus_emails=[],
        )
        self._db.add(account)
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            raise
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise StorageError("Could not create account") from exc

        # A refused grant rolls the session back and expires `account`.
        granted = await self.bonus_policy.grant_welcome_bonus(account_id, normalized)
        if not granted:
            await self._reset_balance_to_zero(account_id)
        account = await self.get_account(account_id)
        logger.info("account_created account=%s bonus_granted=%s credits=%s", account_id, granted, account.credits)
        return account, granted

    async def _reset_balance_to_zero(self, account_id: str) -> None:
        # Only valid right after creation, before any transaction exists.
        async with self.bonus_policy.ledger.locks.hold(account_id):
            store = self.bonus_policy.ledger.store
            try:
                account = await store.lock_account(account_id)
                if account.credits != 0 and not await store.list_transactions(account_id, limit=1):
                    account.credits = 0
                    account.updated_at = datetime.now(timezone.utc)
                await self._db.commit()
            except SQLAlchemyError as exc:
                await self._db.rollback()
                raise StorageError("Could not initialise account balance") from exc

    async def sync_account(self, account_id: str, email: str, name: Optional[str] = None) -> Tuple[Account, bool, bool]:
        """Idempotent creation hook. Returns (account, created, bonus_granted)."""
        result = await self._db.execute(select(Account).where(Account.id == account_id))
        existing = result.scalar_one_or_none()
        if existing is not None:
            if name and existing.name != name:
                existing.name = name
                await self._db.commit()
            return existing, False, False

        try:
            account, granted = await self.create_account(account_id, email, name)
        except IntegrityError:
            # Lost a race against a concurrent sync of the same identity.
            result = await self._db.execute(select(Account).where(Account.id == account_id))
            existing = result.scalar_one_or_none()
            if existing is None:
                raise
            return existing, False, False
        return account, True, granted

    async def delete_account(self, account_id: str) -> str:
        """Burn the email, then purge the account and its transactions in one transaction."""
        account = await self.get_account(account_id)
        email = normalize_email(account.email)
        ledger = self.bonus_policy.ledger

        async with self.bonus_policy.email_locks.hold(email), ledger.locks.hold(account_id):
            try:
                account = await ledger.store.lock_account(account_id)
                await self.bonus_policy.record_burned_email(email, bool(account.has_received_bonus))
                await self._db.execute(
                    delete(CreditTransaction).where(CreditTransaction.account_id == account_id)
                )
                await self._db.execute(delete(Account).where(Account.id == account_id))
                await self._db.commit()
            except AccountNotFoundError:
                await self._db.rollback()
                raise
            except SQLAlchemyError as exc:
                await self._db.rollback()
                logger.exception("account_delete_failed account=%s", account_id)
                raise StorageError("Could not delete account") from exc

        logger.info("account_deleted account=%s email_burned=%s", account_id, email)
        return email
