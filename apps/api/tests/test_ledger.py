import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_account
from models.credit_transaction import CreditTransaction
from services.credits import CreditLedger
from services.errors import AccountNotFoundError, LedgerValidationError, StorageError
from services.ledger_store import LedgerStore, TransactionRecord
from services.welcome_bonus import WelcomeBonusPolicy


async def _funded_account(session, account_id: str, credits: int) -> None:
    await make_account(session, account_id, f"{account_id}@example.com")
    if credits:
        await CreditLedger(session).credit(account_id, credits, "Initial purchase", kind="purchase")


@pytest.mark.asyncio
async def test_end_to_end_bonus_then_debit(db):
    await make_account(db, "acct-e2e", "e2e@example.com")
    ledger = CreditLedger(db)
    assert await ledger.get_balance("acct-e2e") == 0

    granted = await WelcomeBonusPolicy(db, ledger).grant_welcome_bonus("acct-e2e", "e2e@example.com")
    assert granted is True
    assert await ledger.get_balance("acct-e2e") == 100

    history = await ledger.store.list_transactions("acct-e2e")
    assert len(history) == 1
    assert history[0].kind == "bonus"
    assert history[0].amount == 100
    assert history[0].balance == 100

    assert await ledger.debit("acct-e2e", 10, "dataset upload", "dataset_upload") is True
    assert await ledger.get_balance("acct-e2e") == 90

    latest = (await ledger.store.list_transactions("acct-e2e", limit=1))[0]
    assert latest.kind == "usage"
    assert latest.amount == -10
    assert latest.balance == 90
    assert latest.operation_type == "dataset_upload"


@pytest.mark.asyncio
async def test_insufficient_funds_leaves_balance_and_log_untouched(db):
    await _funded_account(db, "acct-poor", 5)
    ledger = CreditLedger(db)

    assert await ledger.debit("acct-poor", 50, "report", "report_generation") is False
    assert await ledger.get_balance("acct-poor") == 5
    history = await ledger.store.list_transactions("acct-poor")
    assert [entry.kind for entry in history] == ["purchase"]


@pytest.mark.asyncio
async def test_debit_to_exactly_zero_is_allowed(db):
    await _funded_account(db, "acct-zero", 10)
    ledger = CreditLedger(db)

    assert await ledger.debit("acct-zero", 10, "training", "model_training") is True
    assert await ledger.get_balance("acct-zero") == 0
    assert await ledger.debit("acct-zero", 1, "prediction", "prediction") is False


@pytest.mark.asyncio
async def test_concurrent_debits_serialize(session_maker):
    async with session_maker() as session:
        await _funded_account(session, "acct-race", 10)

    async def _debit():
        async with session_maker() as session:
            return await CreditLedger(session).debit("acct-race", 6, "prediction batch", "prediction")

    results = await asyncio.gather(_debit(), _debit())
    assert sorted(results) == [False, True]

    async with session_maker() as session:
        ledger = CreditLedger(session)
        assert await ledger.get_balance("acct-race") == 4
        usage = [entry for entry in await ledger.store.list_transactions("acct-race") if entry.kind == "usage"]
        assert len(usage) == 1
        assert usage[0].balance == 4


@pytest.mark.asyncio
async def test_running_balance_replays_to_stored_balance(db):
    await _funded_account(db, "acct-replay", 0)
    ledger = CreditLedger(db)
    await ledger.credit("acct-replay", 250, "Professional pack", kind="purchase", resource_id="pi_1")
    await ledger.debit("acct-replay", 10, "upload", "dataset_upload")
    await ledger.debit("acct-replay", 2, "prediction", "prediction")
    await ledger.credit("acct-replay", 2, "Refund: failed prediction", kind="refund")
    await ledger.debit("acct-replay", 500, "too expensive", "report_generation")

    running = 0
    entries = await ledger.store.replay_order("acct-replay")
    for entry in entries:
        running += entry.amount
        assert entry.balance == running
    assert [entry.sequence for entry in entries] == [1, 2, 3, 4]
    assert running == await ledger.get_balance("acct-replay") == 240


@pytest.mark.asyncio
async def test_list_transactions_is_newest_first_and_paged(db):
    await _funded_account(db, "acct-page", 100)
    ledger = CreditLedger(db)
    for _ in range(3):
        await ledger.debit("acct-page", 2, "prediction", "prediction")

    page = await ledger.recent_transactions("acct-page", limit=2)
    assert [entry.balance for entry in page] == [94, 96]
    second = await ledger.recent_transactions("acct-page", limit=2, offset=2)
    assert [entry.balance for entry in second] == [98, 100]


@pytest.mark.asyncio
async def test_user_history_is_capped_but_admin_history_is_not(db, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "CREDIT_HISTORY_LIMIT", 3)
    await _funded_account(db, "acct-cap", 100)
    ledger = CreditLedger(db)
    for _ in range(4):
        await ledger.debit("acct-cap", 1, "prediction", "prediction")

    assert len(await ledger.recent_transactions("acct-cap", limit=100)) == 3
    assert len(await ledger.full_history("acct-cap")) == 5


@pytest.mark.asyncio
async def test_invalid_amounts_and_kinds_are_rejected(db):
    await _funded_account(db, "acct-args", 10)
    ledger = CreditLedger(db)

    with pytest.raises(ValueError):
        await ledger.debit("acct-args", 0, "nothing")
    with pytest.raises(ValueError):
        await ledger.credit("acct-args", -5, "negative")
    with pytest.raises(ValueError):
        await ledger.credit("acct-args", 5, "usage is not a credit", kind="usage")


@pytest.mark.asyncio
async def test_unknown_account_raises_not_found(db):
    ledger = CreditLedger(db)
    with pytest.raises(AccountNotFoundError):
        await ledger.get_balance("missing")
    with pytest.raises(AccountNotFoundError):
        await ledger.debit("missing", 1, "prediction")


@pytest.mark.asyncio
async def test_append_transaction_rejects_inconsistent_snapshot(db):
    await _funded_account(db, "acct-bad", 10)
    store = LedgerStore(db)

    with pytest.raises(LedgerValidationError):
        await store.append_transaction(
            TransactionRecord(account_id="acct-bad", kind="usage", amount=-3, balance=3, description="wrong")
        )
    with pytest.raises(LedgerValidationError):
        await store.append_transaction(
            TransactionRecord(account_id="acct-bad", kind="bonus", amount=-3, balance=10, description="wrong sign")
        )
    await db.rollback()


@pytest.mark.asyncio
async def test_storage_failure_rolls_back_balance(session_maker, monkeypatch):
    async with session_maker() as session:
        await _funded_account(session, "acct-fail", 20)

    async def _broken_append(self, record):
        raise OperationalError("INSERT INTO credit_transactions", {}, Exception("disk I/O error"))

    monkeypatch.setattr(LedgerStore, "append_transaction", _broken_append)
    async with session_maker() as session:
        with pytest.raises(StorageError):
            await CreditLedger(session).debit("acct-fail", 5, "upload", "dataset_upload")

    async with session_maker() as session:
        ledger = CreditLedger(session)
        assert await ledger.get_balance("acct-fail") == 20
        entries = await ledger.store.list_transactions("acct-fail")
        assert all(isinstance(entry, CreditTransaction) for entry in entries)
        assert [entry.kind for entry in entries] == ["purchase"]


@pytest.mark.asyncio
async def test_statistics_split_by_kind(db):
    await _funded_account(db, "acct-stats", 100)
    ledger = CreditLedger(db)
    await ledger.debit("acct-stats", 30, "report", "report_generation")
    await ledger.credit("acct-stats", 5, "Refund", kind="refund")
    await ledger.credit("acct-stats", 100, "Welcome bonus", kind="bonus", operation_type="welcome_bonus")

    stats = await ledger.statistics("acct-stats")
    assert stats == {
        "total_spent": 30,
        "total_purchased": 100,
        "total_bonuses": 100,
        "total_refunded": 5,
        "transaction_count": 4,
    }
