"""
Tests for the Main Application.

Drives the assembled FastAPI app over ASGI with the database dependency
overridden: auth wiring, validation handling and the operational endpoints.
"""

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import httpx
import pytest

from conftest import make_token
from metering.db.session import get_db
from metering.main import app
from metering.models.api import PlanType
from metering.models.domain import BalanceSnapshot, SearchOutcome


@pytest.fixture
async def client(db_session: AsyncMock) -> AsyncIterator[httpx.AsyncClient]:
    async def _override_db() -> AsyncIterator[AsyncMock]:
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()


class TestOperationalEndpoints:
    """Root, health and metrics."""

    @pytest.mark.asyncio
    async def test_root(self, client: httpx.AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient):
        await client.get("/")
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "metering_http_requests_total" in response.text


class TestAuthWiring:
    """Every user endpoint requires a bearer token."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("GET", "/v1/account/balance"),
            ("GET", "/v1/searches/history"),
            ("GET", "/v1/referrals/me"),
            ("POST", "/v1/referrals/code"),
            ("GET", "/v1/notifications"),
        ],
    )
    async def test_missing_token(self, method: str, path: str, client: httpx.AsyncClient):
        response = await client.request(method, path)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_billing_events_require_service_key(self, client: httpx.AsyncClient):
        response = await client.post(
            "/v1/billing/events",
            json={"user_id": str(uuid4()), "event_type": "credit_grant", "credits": 5},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    @pytest.mark.asyncio
    async def test_search_for_other_user(self, client: httpx.AsyncClient):
        token = make_token(str(uuid4()))

        response = await client.post(
            "/v1/searches",
            json={"user_id": str(uuid4()), "address": "12 Smith St"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Token does not match requested user"


class TestSearchOverHttp:
    """POST /v1/searches through the full stack."""

    @pytest.mark.asyncio
    async def test_search(self, client: httpx.AsyncClient):
        user_id = uuid4()
        token = make_token(str(user_id))
        outcome = SearchOutcome(
            balance=BalanceSnapshot(
                user_id=user_id,
                plan=PlanType.FREE_TRIAL,
                search_count=1,
                credit_topups=0,
                monthly_used=0,
                billing_month=None,
            ),
            is_recheck=False,
            credit_consumed=True,
            history_recorded=True,
            remaining_searches=1,
        )

        with patch("metering.api.routes.SearchService") as MockService:
            MockService.from_settings.return_value.perform_search = AsyncMock(return_value=outcome)

            response = await client.post(
                "/v1/searches",
                json={"user_id": str(user_id), "address": "12 Smith St"},
                headers={"Authorization": f"Bearer {token}"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["credit_consumed"] is True
        assert body["remaining_searches"] == 1

    @pytest.mark.asyncio
    async def test_validation_errors_do_not_echo_input(self, client: httpx.AsyncClient):
        user_id = uuid4()
        token = make_token(str(user_id))

        response = await client.post(
            "/v1/phone/code",
            json={"user_id": str(user_id), "phone": "not-a-phone-number"},
            headers={"Authorization": f"Bearer {token}"},
        )

        assert response.status_code == 400
        assert "not-a-phone-number" not in response.text

    @pytest.mark.asyncio
    async def test_missing_address_is_bad_request(self, client: httpx.AsyncClient):
        user_id = uuid4()
        token = make_token(str(user_id))

        with patch("metering.api.routes.SearchService") as MockService:
            response = await client.post(
                "/v1/searches",
                json={"user_id": str(user_id)},
                headers={"Authorization": f"Bearer {token}"},
            )

        assert response.status_code == 400
        assert ["body", "address"] in [error["loc"] for error in response.json()["detail"]]
        MockService.from_settings.assert_not_called()
