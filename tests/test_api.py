"""
Dashboard API tests.
"""
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api.main import app, get_session_factory
from conftest import make_topup
from core.config import settings
from services.topup_state import TopupStatus


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, Any]:
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


class TestDashboardApi:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_empty_stats(self, client: AsyncClient) -> None:
        assert (await client.get("/stats/earnings")).json() == {"total": 0}
        assert (await client.get("/stats/leaderboard")).json() == []
        assert (await client.get("/quota/42")).json() == {
            "purchaser_id": 42,
            "daily_limit": settings.initial_daily_limit,
            "total_topup_amount": 0,
        }

    @pytest.mark.asyncio
    async def test_stats_after_settlement(self, client: AsyncClient, reconciler) -> None:
        tx = make_topup(status=TopupStatus.AWAITING_SETTLEMENT, gateway_transaction_id="TRX1")
        await reconciler.settle(tx, tx.total_amount)

        assert (await client.get("/stats/earnings")).json() == {"total": 53200}
        assert (await client.get("/stats/leaderboard", params={"limit": 5})).json() == [
            {"rank": 1, "name": "jo****e@gmail.com", "total": 50000},
        ]
        quota = (await client.get("/quota/42")).json()
        assert quota["daily_limit"] == 55
        assert quota["total_topup_amount"] == 50000

    @pytest.mark.asyncio
    async def test_leaderboard_limit_is_validated(self, client: AsyncClient) -> None:
        response = await client.get("/stats/leaderboard", params={"limit": 0})
        assert response.status_code == 422
