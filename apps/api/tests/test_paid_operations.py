import pytest

from conftest import make_account
from services.credits import CreditLedger
from services.errors import InsufficientFundsError, PricingUnavailableError
from services.paid_operations import charge_operation, run_paid_operation


class FakeReportStore:
    def __init__(self):
        self.reports = {}

    async def create(self):
        report_id = f"report-{len(self.reports) + 1}"
        self.reports[report_id] = {"status": "generated"}
        return report_id

    async def delete(self, report_id):
        self.reports.pop(report_id, None)


@pytest.mark.asyncio
async def test_paid_operation_debits_after_work(seeded_db):
    await make_account(seeded_db, "acct-paid", "paid@example.com")
    await CreditLedger(seeded_db).credit("acct-paid", 60, "Purchase")
    store = FakeReportStore()

    result = await run_paid_operation(
        seeded_db,
        "acct-paid",
        "report_generation",
        store.create,
        store.delete,
        description="Report generation",
        resource_id_of=lambda report_id: report_id,
    )

    assert result.value == "report-1"
    assert result.charge.charged == 50
    assert result.charge.balance_after == 10
    assert "report-1" in store.reports
    latest = (await CreditLedger(seeded_db).store.list_transactions("acct-paid", limit=1))[0]
    assert latest.resource_id == "report-1"
    assert latest.operation_type == "report_generation"


@pytest.mark.asyncio
async def test_precheck_refuses_before_side_effect(seeded_db):
    await make_account(seeded_db, "acct-short", "short@example.com")
    store = FakeReportStore()

    with pytest.raises(InsufficientFundsError) as exc_info:
        await run_paid_operation(seeded_db, "acct-short", "report_generation", store.create, store.delete)

    assert exc_info.value.required == 50
    assert exc_info.value.available == 0
    assert store.reports == {}


@pytest.mark.asyncio
async def test_failed_debit_compensates_side_effect(seeded_db):
    await make_account(seeded_db, "acct-drain", "drain@example.com")
    ledger = CreditLedger(seeded_db)
    await ledger.credit("acct-drain", 50, "Purchase")
    store = FakeReportStore()

    async def _create_while_balance_drains():
        report_id = await store.create()
        # A concurrent request spends the credits while the report is being built.
        await ledger.debit("acct-drain", 45, "Concurrent training", "model_training")
        return report_id

    with pytest.raises(InsufficientFundsError):
        await run_paid_operation(
            seeded_db,
            "acct-drain",
            "report_generation",
            _create_while_balance_drains,
            store.delete,
        )

    assert store.reports == {}
    assert await ledger.get_balance("acct-drain") == 5


@pytest.mark.asyncio
async def test_unseeded_operation_is_pricing_unavailable(db):
    await make_account(db, "acct-unpriced", "unpriced@example.com")
    store = FakeReportStore()

    with pytest.raises(PricingUnavailableError):
        await run_paid_operation(db, "acct-unpriced", "prediction", store.create, store.delete)
    assert store.reports == {}


@pytest.mark.asyncio
async def test_charge_operation_raises_payment_required(seeded_db):
    await make_account(seeded_db, "acct-charge", "charge@example.com")
    await CreditLedger(seeded_db).credit("acct-charge", 3, "Purchase")

    charge = await charge_operation(seeded_db, "acct-charge", "prediction", resource_id="quote-1")
    assert (charge.charged, charge.balance_after) == (2, 1)

    with pytest.raises(InsufficientFundsError):
        await charge_operation(seeded_db, "acct-charge", "prediction", resource_id="quote-2")
    assert await CreditLedger(seeded_db).get_balance("acct-charge") == 1
