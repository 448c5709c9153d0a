"""One-time welcome bonus with burned-email protection."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.burned_email import BurnedEmail
from services.credits import CreditLedger
from services.errors import LedgerError, StorageError
from services.locks import KeyedLocks, email_locks

logger = logging.getLogger(__name__)

WELCOME_BONUS_OPERATION = "welcome_bonus"


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def welcome_bonus_amount() -> int:
    return max(int(settings.WELCOME_BONUS_CREDITS), 0)


def burned_email_key():
    """Registry email as compared by lookups; legacy rows may be mixed-case or padded."""
    return func.lower(func.trim(BurnedEmail.email))


class WelcomeBonusPolicy:
    """Grants the welcome bonus at most once per account and once per email."""

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[CreditLedger] = None,
        *,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._db = db
        self.ledger = ledger or CreditLedger(db)
        self.email_locks = locks or email_locks

    async def is_email_burned(self, email: str) -> bool:
        result = await self._db.execute(
            select(BurnedEmail.id).where(burned_email_key() == normalize_email(email)).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def grant_welcome_bonus(self, account_id: str, email: str) -> bool:
        """Credit the welcome bonus. False when the email is burned or the bonus was already granted."""
        normalized = normalize_email(email)
        amount = welcome_bonus_amount()
        if amount <= 0:
            logger.info("welcome_bonus_disabled account=%s", account_id)
            return False

        async with self.email_locks.hold(normalized), self.ledger.locks.hold(account_id):
            try:
                if await self.is_email_burned(normalized):
                    await self._db.rollback()
                    logger.info("welcome_bonus_skipped account=%s reason=email_burned", account_id)
                    return False

                account = await self.ledger.store.lock_account(account_id)
                if account.has_received_bonus:
                    await self._db.rollback()
                    logger.info("welcome_bonus_skipped account=%s reason=already_granted", account_id)
                    return False

                entry = await self.ledger.post_locked(
                    account,
                    amount,
                    kind="bonus",
                    description=f"Welcome bonus: {amount} free credits",
                    operation_type=WELCOME_BONUS_OPERATION,
                )
                account.has_received_bonus = True
                previous = [str(item) for item in (account.bonus_emails or [])]
                if normalized not in previous:
                    account.bonus_emails = previous + [normalized]
                await self._db.commit()
            except LedgerError:
                await self._db.rollback()
                raise
            except SQLAlchemyError as exc:
                await self._db.rollback()
                logger.exception("welcome_bonus_storage_failure account=%s", account_id)
                raise StorageError("Could not persist welcome bonus") from exc

        logger.info("welcome_bonus_granted account=%s amount=%s balance=%s", account_id, amount, entry.balance)
        return True

    async def record_burned_email(self, email: str, has_received_bonus: bool) -> BurnedEmail:
        """Upsert the registry entry for ``email``, collapsing any duplicates.

        The caller holds the email lock and commits.
        """
        normalized = normalize_email(email)
        result = await self._db.execute(
            select(BurnedEmail)
            .where(burned_email_key() == normalized)
            .order_by(BurnedEmail.burned_at.desc(), BurnedEmail.id.desc())
        )
        rows = list(result.scalars().all())
        now = datetime.now(timezone.utc)
        if not rows:
            entry = BurnedEmail(email=normalized, has_received_bonus=bool(has_received_bonus), burned_at=now)
            self._db.add(entry)
            await self._db.flush()
            return entry

        keep, extra = rows[0], rows[1:]
        keep.has_received_bonus = bool(
            keep.has_received_bonus or has_received_bonus or any(row.has_received_bonus for row in extra)
        )
        keep.email = normalized
        keep.burned_at = now
        for row in extra:
            await self._db.delete(row)
        await self._db.flush()
        return keep

    async def remove_burned_email(self, email: str) -> int:
        """Lift the registry block for ``email``. Returns the number of entries removed."""
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("email is required")

        async with self.email_locks.hold(normalized):
            try:
                result = await self._db.execute(
                    delete(BurnedEmail)
                    .where(burned_email_key() == normalized)
                    .execution_options(synchronize_session=False)
                )
                await self._db.commit()
            except SQLAlchemyError as exc:
                await self._db.rollback()
                logger.exception("burned_email_remove_failed email=%s", normalized)
                raise StorageError("Could not update the burned email registry") from exc

        removed = int(result.rowcount or 0)
        logger.warning("burned_email_removed email=%s entries=%s", normalized, removed)
        return removed
