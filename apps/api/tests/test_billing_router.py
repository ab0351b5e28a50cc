import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from config import settings
from database import get_db
from main import app
from models.user import User
from services.session_token import ROLE_ADMIN, create_session_token


TEST_USER_ID = "billing-router-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}
ADMIN_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('ops-admin', role=ROLE_ADMIN)['token']}"}


@pytest_asyncio.fixture
async def integration_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def manual_grants_enabled(monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_MANUAL_GRANTS", True)


@pytest.mark.asyncio
async def test_wallet_requires_session(integration_client):
    resp = await integration_client.get("/billing/wallet")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_wallet_rejects_other_users_scope(integration_client, create_account):
    await create_account("someone-else", plan="pro", wallet_balance=100)

    resp = await integration_client.get("/billing/wallet?user_id=someone-else", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_wallet_summary_with_history(integration_client, create_account):
    await create_account(TEST_USER_ID, plan="pro", wallet_balance=0)

    authorize_resp = await integration_client.post(
        "/metering/authorize",
        json={"action_type": "post_analysis"},
        headers=TEST_AUTH_HEADER,
    )
    assert authorize_resp.status_code == 402
    assert authorize_resp.json()["detail"]["error_code"] == "INSUFFICIENT_CREDITS"
    assert authorize_resp.json()["detail"]["upgrade_required"] is True

    wallet_resp = await integration_client.get("/billing/wallet?history=true", headers=TEST_AUTH_HEADER)
    assert wallet_resp.status_code == 200
    payload = wallet_resp.json()
    assert payload["balance"] == {"current": 0, "formatted": "$0.00", "plan": "pro"}
    assert payload["allocation"]["total"] == 15000
    assert payload["allocation"]["plan_name"] == "Pro"
    assert payload["usage"]["percent_used"] == 100
    assert payload["max_post_analysis_cost"] == 501
    assert payload["transactions"] == []


@pytest.mark.asyncio
async def test_wallet_missing_account(integration_client):
    resp = await integration_client.get("/billing/wallet", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_metering_authorize_charges_wallet(integration_client, create_account):
    await create_account(TEST_USER_ID, plan="growth", wallet_balance=2000)

    resp = await integration_client.post(
        "/metering/authorize",
        json={
            "action_type": "post_analysis",
            "reactions": 120,
            "comments": 30,
            "post_url": "https://www.linkedin.com/posts/example-123",
        },
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["allowed"] is True
    assert payload["charged"] == 151
    assert payload["charged_formatted"] == "$1.51"
    assert payload["new_balance"] == 1849

    tx_resp = await integration_client.get("/billing/transactions", headers=TEST_AUTH_HEADER)
    assert tx_resp.status_code == 200
    items = tx_resp.json()["items"]
    assert tx_resp.json()["count"] == 1
    assert items[0]["amount"] == -151
    assert items[0]["balance_after"] == 1849
    assert items[0]["metadata"] == {"post_url": "https://www.linkedin.com/posts/example-123"}


@pytest.mark.asyncio
async def test_metering_authorize_prices_comments_without_reactions(integration_client, create_account):
    await create_account(TEST_USER_ID, plan="pro", wallet_balance=2000)

    resp = await integration_client.post(
        "/metering/authorize",
        json={"action_type": "post_analysis", "comments": 40},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    assert resp.json()["charged"] == 41
    assert resp.json()["new_balance"] == 1959


@pytest.mark.asyncio
async def test_metering_authorize_free_quota_and_usage(integration_client, create_account):
    await create_account(TEST_USER_ID, plan="free", enrichments_used=9)

    first = await integration_client.post(
        "/metering/authorize", json={"action_type": "profile_enrichment"}, headers=TEST_AUTH_HEADER
    )
    second = await integration_client.post(
        "/metering/authorize", json={"action_type": "profile_enrichment"}, headers=TEST_AUTH_HEADER
    )
    assert first.status_code == 200
    assert first.json()["usage_count"] == 10
    assert first.json()["charged"] == 0
    assert second.status_code == 402
    assert second.json()["detail"]["error_code"] == "LIMIT_REACHED"

    usage_resp = await integration_client.get("/billing/usage", headers=TEST_AUTH_HEADER)
    assert usage_resp.status_code == 200
    usage = usage_resp.json()
    assert usage["enrichments_used"] == 10
    assert usage["enrichments_percentage"] == 100


@pytest.mark.asyncio
async def test_metering_rejects_balance_adjustment_actions(integration_client, create_account):
    await create_account(TEST_USER_ID, plan="pro", wallet_balance=1000)

    resp = await integration_client.post(
        "/metering/authorize", json={"action_type": "manual_grant"}, headers=TEST_AUTH_HEADER
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_manual_grant_disabled_by_default(integration_client, create_account):
    await create_account(TEST_USER_ID, plan="free")

    resp = await integration_client.post(
        "/billing/grant",
        json={"user_id": TEST_USER_ID, "amount": 500},
        headers=ADMIN_AUTH_HEADER,
    )
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_manual_grant_requires_admin(integration_client, create_account, manual_grants_enabled):
    await create_account(TEST_USER_ID, plan="free")

    resp = await integration_client.post(
        "/billing/grant",
        json={"user_id": TEST_USER_ID, "amount": 500},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_manual_grant_credits_wallet(integration_client, session_maker, create_account, manual_grants_enabled):
    await create_account(TEST_USER_ID, plan="pro", wallet_balance=100)

    resp = await integration_client.post(
        "/billing/grant",
        json={"user_id": TEST_USER_ID, "amount": 500, "reason": "Support goodwill"},
        headers=ADMIN_AUTH_HEADER,
    )
    assert resp.status_code == 200
    assert resp.json() == {
        "ok": True,
        "credits_added": 500,
        "balance_after": 600,
        "balance_formatted": "$6.00",
    }

    async with session_maker() as session:
        balance = await session.scalar(select(User.wallet_balance).where(User.id == TEST_USER_ID))
    assert balance == 600

    admin_view = await integration_client.get(
        f"/billing/transactions?user_id={TEST_USER_ID}", headers=ADMIN_AUTH_HEADER
    )
    assert admin_view.status_code == 200
    item = admin_view.json()["items"][0]
    assert item["action_type"] == "manual_grant"
    assert item["metadata"] == {"granted_by": "ops-admin"}


@pytest.mark.asyncio
async def test_manual_grant_unknown_account(integration_client, manual_grants_enabled):
    resp = await integration_client.post(
        "/billing/grant",
        json={"user_id": "ghost", "amount": 500},
        headers=ADMIN_AUTH_HEADER,
    )
    assert resp.status_code == 404
