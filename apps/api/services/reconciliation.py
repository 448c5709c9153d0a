"""Operator-invoked ledger maintenance scans.

Each scan is safe to re-run and returns a flat report. Nothing here runs
implicitly on user traffic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.burned_email import BurnedEmail
from models.credit_transaction import CreditTransaction
from services.errors import AccountNotFoundError, LedgerError, StorageError
from services.welcome_bonus import WELCOME_BONUS_OPERATION, WelcomeBonusPolicy, burned_email_key, normalize_email

logger = logging.getLogger(__name__)

SCAN_MISSING_BONUSES = "missing_bonuses"
SCAN_DUPLICATE_BONUSES = "duplicate_bonuses"
SCAN_BURNED_EMAIL_DUPLICATES = "burned_email_duplicates"
SCAN_BALANCE_DRIFT = "balance_drift"

SCANS = (
    SCAN_MISSING_BONUSES,
    SCAN_DUPLICATE_BONUSES,
    SCAN_BURNED_EMAIL_DUPLICATES,
    SCAN_BALANCE_DRIFT,
)


@dataclass
class ReconciliationReport:
    scan: str
    examined: int = 0
    fixed: int = 0
    issues: List[Dict[str, Any]] = field(default_factory=list)
    ran_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan": self.scan,
            "examined": self.examined,
            "fixed": self.fixed,
            "issues": list(self.issues),
            "ran_at": self.ran_at.isoformat(),
        }


class ReconciliationService:
    def __init__(self, db: AsyncSession, bonus_policy: Optional[WelcomeBonusPolicy] = None) -> None:
        self._db = db
        self.bonus_policy = bonus_policy or WelcomeBonusPolicy(db)
        self.ledger = self.bonus_policy.ledger

    async def run(self, scan: str) -> ReconciliationReport:
        if scan == SCAN_MISSING_BONUSES:
            return await self.grant_missing_bonuses()
        if scan == SCAN_DUPLICATE_BONUSES:
            return await self.remove_duplicate_bonuses()
        if scan == SCAN_BURNED_EMAIL_DUPLICATES:
            return await self.dedupe_burned_emails()
        if scan == SCAN_BALANCE_DRIFT:
            return await self.find_balance_drift()
        raise ValueError(f"Unknown reconciliation scan '{scan}'")

    async def grant_missing_bonuses(self) -> ReconciliationReport:
        """Grant the welcome bonus to empty accounts that never got it and whose email is not burned.

        Accounts flagged as bonus recipients that sit at zero credits are reported, not changed.
        """
        report = ReconciliationReport(scan=SCAN_MISSING_BONUSES)
        result = await self._db.execute(
            select(Account.id, Account.email).where(
                Account.credits == 0,
                Account.has_received_bonus.is_(False),
            )
        )
        candidates = list(result.all())
        report.examined = len(candidates)

        for account_id, email in candidates:
            if await self.bonus_policy.is_email_burned(email):
                report.issues.append(
                    {"account_id": account_id, "email": normalize_email(email), "issue": "email_burned"}
                )
                continue
            try:
                granted = await self.bonus_policy.grant_welcome_bonus(account_id, email)
            except AccountNotFoundError:
                # Deleted between the scan query and the grant.
                continue
            if granted:
                report.fixed += 1
                report.issues.append({"account_id": account_id, "issue": "bonus_granted"})

        flagged = await self._db.execute(
            select(Account.id, Account.email).where(
                Account.credits == 0,
                Account.has_received_bonus.is_(True),
            )
        )
        flagged_rows = list(flagged.all())
        report.examined += len(flagged_rows)
        for account_id, email in flagged_rows:
            report.issues.append(
                {"account_id": account_id, "email": normalize_email(email), "issue": "bonus_flag_without_credits"}
            )

        self._log(report)
        return report

    async def remove_duplicate_bonuses(self) -> ReconciliationReport:
        """Keep the earliest welcome bonus per account and rebuild the balance from the remaining log."""
        report = ReconciliationReport(scan=SCAN_DUPLICATE_BONUSES)
        result = await self._db.execute(
            select(CreditTransaction.account_id)
            .where(
                CreditTransaction.kind == "bonus",
                CreditTransaction.operation_type == WELCOME_BONUS_OPERATION,
            )
            .group_by(CreditTransaction.account_id)
            .having(func.count(CreditTransaction.id) > 1)
        )
        account_ids = [row[0] for row in result.all()]
        report.examined = len(account_ids)

        for account_id in account_ids:
            issue = await self._repair_duplicate_bonus(account_id)
            if issue is None:
                continue
            if issue["issue"] == "duplicate_bonus_removed":
                report.fixed += 1
            report.issues.append(issue)

        self._log(report)
        return report

    async def _repair_duplicate_bonus(self, account_id: str) -> Optional[Dict[str, Any]]:
        async with self.ledger.locks.hold(account_id):
            try:
                account = await self.ledger.store.lock_account(account_id)
                entries = await self.ledger.store.replay_order(account_id)
                bonuses = [
                    entry
                    for entry in entries
                    if entry.kind == "bonus" and entry.operation_type == WELCOME_BONUS_OPERATION
                ]
                if len(bonuses) <= 1:
                    await self._db.rollback()
                    return None

                removed_ids = {entry.id for entry in bonuses[1:]}
                kept = [entry for entry in entries if entry.id not in removed_ids]
                previous_balance = int(account.credits)
                new_balance = sum(int(entry.amount) for entry in kept)
                if new_balance < 0:
                    await self._db.rollback()
                    logger.error(
                        "duplicate_bonus_repair_skipped account=%s recomputed_balance=%s",
                        account_id,
                        new_balance,
                    )
                    return {
                        "account_id": account_id,
                        "issue": "negative_balance_after_repair",
                        "duplicates": len(removed_ids),
                        "stored_balance": previous_balance,
                        "recomputed_balance": new_balance,
                    }

                for entry in bonuses[1:]:
                    await self._db.delete(entry)
                await self._db.flush()

                running = 0
                for entry in kept:
                    running += int(entry.amount)
                    if int(entry.balance) != running:
                        entry.balance = running

                account.credits = new_balance
                account.updated_at = datetime.now(timezone.utc)
                await self._db.commit()
            except LedgerError:
                await self._db.rollback()
                raise
            except SQLAlchemyError as exc:
                await self._db.rollback()
                logger.exception("duplicate_bonus_repair_failed account=%s", account_id)
                raise StorageError("Could not repair duplicate bonuses") from exc

        logger.warning(
            "duplicate_bonus_removed account=%s removed=%s balance_before=%s balance_after=%s",
            account_id,
            len(removed_ids),
            previous_balance,
            new_balance,
        )
        return {
            "account_id": account_id,
            "issue": "duplicate_bonus_removed",
            "duplicates": len(removed_ids),
            "balance_before": previous_balance,
            "balance_after": new_balance,
        }

    async def dedupe_burned_emails(self) -> ReconciliationReport:
        """Collapse repeated burned-email entries into the newest one."""
        report = ReconciliationReport(scan=SCAN_BURNED_EMAIL_DUPLICATES)
        result = await self._db.execute(
            select(burned_email_key(), func.count(BurnedEmail.id))
            .group_by(burned_email_key())
            .having(func.count(BurnedEmail.id) > 1)
        )
        duplicates = list(result.all())
        report.examined = len(duplicates)

        for email, count in duplicates:
            async with self.bonus_policy.email_locks.hold(email):
                try:
                    rows_result = await self._db.execute(
                        select(BurnedEmail)
                        .where(burned_email_key() == email)
                        .order_by(BurnedEmail.burned_at.desc(), BurnedEmail.id.desc())
                    )
                    rows = list(rows_result.scalars().all())
                    if len(rows) <= 1:
                        await self._db.rollback()
                        continue
                    keep, extra = rows[0], rows[1:]
                    if not keep.has_received_bonus and any(row.has_received_bonus for row in extra):
                        keep.has_received_bonus = True
                    keep.email = email
                    for row in extra:
                        await self._db.delete(row)
                    await self._db.commit()
                except SQLAlchemyError as exc:
                    await self._db.rollback()
                    logger.exception("burned_email_dedupe_failed email=%s", email)
                    raise StorageError("Could not clean up burned emails") from exc

            report.fixed += 1
            report.issues.append({"email": email, "issue": "duplicate_burned_email", "removed": len(extra)})

        self._log(report)
        return report

    async def find_balance_drift(self, account_id: Optional[str] = None) -> ReconciliationReport:
        """Compare stored balances with the replayed log. Reports only, never corrects."""
        report = ReconciliationReport(scan=SCAN_BALANCE_DRIFT)
        query = select(Account.id, Account.credits).order_by(Account.id)
        if account_id is not None:
            query = query.where(Account.id == account_id)
        result = await self._db.execute(query)
        accounts = list(result.all())
        if account_id is not None and not accounts:
            raise AccountNotFoundError(account_id)
        report.examined = len(accounts)

        for current_id, stored in accounts:
            running = 0
            for entry in await self.ledger.store.replay_order(current_id):
                running += int(entry.amount)
                if int(entry.balance) != running:
                    report.issues.append(
                        {
                            "account_id": current_id,
                            "issue": "snapshot_mismatch",
                            "transaction_id": entry.id,
                            "sequence": entry.sequence,
                            "expected_balance": running,
                            "recorded_balance": int(entry.balance),
                        }
                    )
            if running != int(stored):
                report.issues.append(
                    {
                        "account_id": current_id,
                        "issue": "balance_drift",
                        "stored_balance": int(stored),
                        "replayed_balance": running,
                        "difference": int(stored) - running,
                    }
                )

        if report.issues:
            logger.error("balance_drift_detected issues=%s", len(report.issues))
        self._log(report)
        return report

    def _log(self, report: ReconciliationReport) -> None:
        logger.info(
            "reconciliation_run scan=%s examined=%s fixed=%s issues=%s",
            report.scan,
            report.examined,
            report.fixed,
            len(report.issues),
        )
