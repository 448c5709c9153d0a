from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import make_account
from models.burned_email import BurnedEmail
from models.credit_transaction import CreditTransaction
from services.credits import CreditLedger
from services.errors import AccountNotFoundError
from services.reconciliation import ReconciliationService
from services.welcome_bonus import WelcomeBonusPolicy


async def _account_with_duplicate_bonus(session, account_id: str, spend: int) -> None:
    """Reproduce the historical double grant: two welcome bonus rows and a doubled balance."""
    await make_account(session, account_id, f"{account_id}@example.com")
    await WelcomeBonusPolicy(session).grant_welcome_bonus(account_id, f"{account_id}@example.com")

    account = await CreditLedger(session).store.get_account(account_id)
    account.credits = 200
    session.add(
        CreditTransaction(
            account_id=account_id,
            sequence=2,
            kind="bonus",
            amount=100,
            balance=200,
            description="Welcome bonus: 100 free credits",
            operation_type="welcome_bonus",
        )
    )
    await session.commit()
    if spend:
        await CreditLedger(session).debit(account_id, spend, "upload", "dataset_upload")


@pytest.mark.asyncio
async def test_duplicate_bonus_cleanup_is_idempotent(db):
    await _account_with_duplicate_bonus(db, "acct-double", spend=10)
    service = ReconciliationService(db)

    first = await service.remove_duplicate_bonuses()
    assert first.examined == 1
    assert first.fixed == 1
    assert first.issues[0]["balance_before"] == 190
    assert first.issues[0]["balance_after"] == 90

    ledger = CreditLedger(db)
    assert await ledger.get_balance("acct-double") == 90
    entries = await ledger.store.replay_order("acct-double")
    assert [(entry.kind, entry.amount, entry.balance) for entry in entries] == [
        ("bonus", 100, 100),
        ("usage", -10, 90),
    ]

    second = await service.remove_duplicate_bonuses()
    assert (second.examined, second.fixed, second.issues) == (0, 0, [])
    assert await ledger.get_balance("acct-double") == 90

    drift = await service.find_balance_drift(account_id="acct-double")
    assert drift.issues == []


@pytest.mark.asyncio
async def test_duplicate_bonus_cleanup_skips_negative_result(db):
    await _account_with_duplicate_bonus(db, "acct-spent", spend=150)
    service = ReconciliationService(db)

    report = await service.remove_duplicate_bonuses()
    assert report.fixed == 0
    assert report.issues[0]["issue"] == "negative_balance_after_repair"
    assert report.issues[0]["recomputed_balance"] == -50
    assert await CreditLedger(db).get_balance("acct-spent") == 50


@pytest.mark.asyncio
async def test_missing_bonus_scan_skips_burned_emails(db):
    await make_account(db, "acct-missing", "missing@example.com")
    await make_account(db, "acct-burned", "burned@example.com")
    db.add(BurnedEmail(email="burned@example.com", has_received_bonus=True))
    await db.commit()
    service = ReconciliationService(db)

    report = await service.grant_missing_bonuses()
    assert report.examined == 2
    assert report.fixed == 1
    assert {issue["issue"] for issue in report.issues} == {"bonus_granted", "email_burned"}
    assert await CreditLedger(db).get_balance("acct-missing") == 100
    assert await CreditLedger(db).get_balance("acct-burned") == 0

    rerun = await service.grant_missing_bonuses()
    assert rerun.fixed == 0
    assert rerun.examined == 1


@pytest.mark.asyncio
async def test_burned_email_dedupe_keeps_newest_and_merges_flag(db):
    now = datetime.now(timezone.utc)
    db.add_all(
        [
            BurnedEmail(id="old", email="dupe@example.com", has_received_bonus=True, burned_at=now - timedelta(days=2)),
            BurnedEmail(id="mid", email="dupe@example.com", has_received_bonus=False, burned_at=now - timedelta(days=1)),
            BurnedEmail(id="new", email="dupe@example.com", has_received_bonus=False, burned_at=now),
            BurnedEmail(id="solo", email="solo@example.com", has_received_bonus=False, burned_at=now),
        ]
    )
    await db.commit()
    service = ReconciliationService(db)

    report = await service.dedupe_burned_emails()
    assert (report.examined, report.fixed) == (1, 1)
    assert report.issues[0]["removed"] == 2

    rows = (await db.execute(select(BurnedEmail).where(BurnedEmail.email == "dupe@example.com"))).scalars().all()
    assert [(row.id, row.has_received_bonus) for row in rows] == [("new", True)]

    rerun = await service.dedupe_burned_emails()
    assert (rerun.examined, rerun.fixed) == (0, 0)


@pytest.mark.asyncio
async def test_balance_drift_reports_without_correcting(db):
    await make_account(db, "acct-drift", "drift@example.com", credits=30)
    await make_account(db, "acct-clean", "clean@example.com")
    await CreditLedger(db).credit("acct-clean", 40, "Purchase")
    db.add(
        CreditTransaction(
            account_id="acct-drift",
            sequence=1,
            kind="purchase",
            amount=20,
            balance=25,
            description="Imported purchase",
        )
    )
    await db.commit()

    report = await ReconciliationService(db).find_balance_drift()
    assert report.examined == 2
    assert report.fixed == 0
    issues = {issue["issue"]: issue for issue in report.issues}
    assert issues["snapshot_mismatch"]["expected_balance"] == 20
    assert issues["balance_drift"]["stored_balance"] == 30
    assert issues["balance_drift"]["replayed_balance"] == 20
    assert all(issue["account_id"] == "acct-drift" for issue in report.issues)
    assert await CreditLedger(db).get_balance("acct-drift") == 30

    with pytest.raises(AccountNotFoundError):
        await ReconciliationService(db).find_balance_drift(account_id="missing")


@pytest.mark.asyncio
async def test_scans_on_empty_ledger_report_nothing(db):
    service = ReconciliationService(db)
    for scan in ("missing_bonuses", "duplicate_bonuses", "burned_email_duplicates", "balance_drift"):
        report = (await service.run(scan)).to_dict()
        assert report["scan"] == scan
        assert (report["examined"], report["fixed"], report["issues"]) == (0, 0, [])
        assert report["ran_at"]

    with pytest.raises(ValueError):
        await service.run("orphaned_balances")


@pytest.mark.asyncio
async def test_missing_bonus_scan_reports_flagged_accounts_without_credits(db):
    await make_account(db, "acct-flagged", "flagged@example.com", has_received_bonus=True)
    service = ReconciliationService(db)

    report = await service.grant_missing_bonuses()
    assert report.examined == 1
    assert report.fixed == 0
    assert report.issues == [
        {"account_id": "acct-flagged", "email": "flagged@example.com", "issue": "bonus_flag_without_credits"}
    ]
    assert await CreditLedger(db).get_balance("acct-flagged") == 0


@pytest.mark.asyncio
async def test_burned_email_dedupe_ignores_case(db):
    now = datetime.now(timezone.utc)
    db.add_all(
        [
            BurnedEmail(id="upper", email="Case@Example.com", has_received_bonus=True, burned_at=now - timedelta(days=1)),
            BurnedEmail(id="lower", email="case@example.com", has_received_bonus=False, burned_at=now),
        ]
    )
    await db.commit()

    report = await ReconciliationService(db).dedupe_burned_emails()
    assert (report.examined, report.fixed) == (1, 1)
    assert report.issues[0]["email"] == "case@example.com"

    rows = (await db.execute(select(BurnedEmail))).scalars().all()
    assert [(row.id, row.email, row.has_received_bonus) for row in rows] == [("lower", "case@example.com", True)]
