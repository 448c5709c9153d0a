import pytest

from conftest import auth_headers, make_account
from services.credits import CreditLedger
from services.pricing import OperationCostCatalog


async def _seed_account(session_maker, account_id: str, credits: int) -> None:
    async with session_maker() as session:
        await make_account(session, account_id, f"{account_id}@example.com")
        if credits:
            await CreditLedger(session).credit(account_id, credits, "Purchase")


@pytest.mark.asyncio
async def test_credit_summary_lists_balance_history_and_costs(integration_client):
    client, session_maker = integration_client
    await _seed_account(session_maker, "acct-summary", 40)

    response = await client.get("/credits", headers=auth_headers("acct-summary"))
    assert response.status_code == 200
    body = response.json()
    assert body["balance"] == 40
    assert body["transactions"][0]["kind"] == "purchase"
    assert body["transactions"][0]["balance"] == 40
    assert {operation["id"]: operation["credit_cost"] for operation in body["operations"]} == {
        "dataset_upload": 10,
        "model_training": 10,
        "prediction": 2,
        "report_generation": 50,
    }


@pytest.mark.asyncio
async def test_charge_debits_catalog_price(integration_client):
    client, session_maker = integration_client
    await _seed_account(session_maker, "acct-charge", 12)
    headers = auth_headers("acct-charge")

    response = await client.post(
        "/credits/charge",
        json={"operation_id": "dataset_upload", "resource_id": "dataset-1"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["charged"] == 10
    assert response.json()["balance_after"] == 2

    refused = await client.post("/credits/charge", json={"operation_id": "model_training"}, headers=headers)
    assert refused.status_code == 402
    assert refused.json()["code"] == "insufficient_credits"
    assert refused.json()["required"] == 10
    assert refused.json()["available"] == 2

    history = await client.get("/credits/transactions", params={"limit": 10}, headers=headers)
    kinds = [entry["kind"] for entry in history.json()["transactions"]]
    assert kinds == ["usage", "purchase"]
    assert history.json()["transactions"][0]["resource_id"] == "dataset-1"


@pytest.mark.asyncio
async def test_charge_unknown_operation_is_pricing_unavailable(integration_client):
    client, session_maker = integration_client
    await _seed_account(session_maker, "acct-unpriced", 100)
    async with session_maker() as session:
        await OperationCostCatalog(session).update_operation("prediction", is_active=False)

    response = await client.post(
        "/credits/charge",
        json={"operation_id": "prediction"},
        headers=auth_headers("acct-unpriced"),
    )
    assert response.status_code == 503
    assert response.json()["code"] == "pricing_unavailable"
    assert "prediction" not in response.json()["detail"]


@pytest.mark.asyncio
async def test_transactions_page_size_is_capped(integration_client):
    client, session_maker = integration_client
    await _seed_account(session_maker, "acct-pages", 100)

    response = await client.get(
        "/credits/transactions",
        params={"limit": 500, "offset": 0},
        headers=auth_headers("acct-pages"),
    )
    assert response.status_code == 200
    assert response.json()["limit"] == 50


@pytest.mark.asyncio
async def test_packages_are_public(integration_client):
    client, _ = integration_client
    response = await client.get("/credits/packages")
    assert response.status_code == 200
    packages = response.json()["packages"]
    assert [package["id"] for package in packages] == ["starter", "professional", "enterprise"]
    assert packages[1]["is_popular"] is True
