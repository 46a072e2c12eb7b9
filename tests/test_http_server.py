"""
Component tests for the HTTP API

Requests go through the FastAPI routes into a real coordinator backed by the
in-memory store, so status codes and bodies are checked end to end.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from bookstore_server import http_server
from bookstore_server.auth import AuthManager
from bookstore_server.errors import NetworkFailure, RemoteRejected
from bookstore_server.models import MutationOutcome


@pytest.fixture
def auth_manager(tmp_path):
    manager = AuthManager(session_file=str(tmp_path / "session.json"))
    manager.save_session(access_token="token-123", user_email="reader@example.com")
    return manager


@pytest.fixture
def client_stub():
    stub = MagicMock()
    stub.login = AsyncMock(return_value=True)
    return stub


@pytest.fixture
async def api(monkeypatch, coordinator, auth_manager, client_stub):
    """HTTP client wired to the app with test globals"""
    monkeypatch.setattr(http_server, "coordinator", coordinator, raising=False)
    monkeypatch.setattr(http_server, "auth_manager", auth_manager, raising=False)
    monkeypatch.setattr(http_server, "bookstore_client", client_stub, raising=False)
    async with AsyncClient(transport=ASGITransport(app=http_server.app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
class TestInfoEndpoints:
    async def test_health(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "authenticated": True}

    async def test_auth_status(self, api):
        response = await api.get("/auth/status")

        assert response.json() == {"authenticated": True, "email": "reader@example.com"}

    async def test_cart_requires_login(self, api, auth_manager):
        auth_manager.clear_session()

        response = await api.get("/cart")

        assert response.status_code == 401


@pytest.mark.asyncio
class TestCartEndpoints:
    """Cart operations over HTTP"""

    async def test_get_cart(self, api):
        response = await api.get("/cart")

        assert response.status_code == 200
        data = response.json()
        assert [line["id"] for line in data["lines"]] == [1, 2, 3]
        assert data["selected_ids"] == [1, 2, 3]
        assert data["pending_line_ids"] == []
        assert data["totals"]["subtotal"] == "73.50"
        assert data["totals"]["total"] == "108.50"

    async def test_update_quantity(self, api):
        response = await api.put("/cart/items/1", json={"quantity": 3})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["line"]["quantity"] == 3
        assert data["line"]["total_price"] == "30"

    async def test_quantity_over_stock_is_422(self, api, service):
        response = await api.put("/cart/items/2", json={"quantity": 4})

        assert response.status_code == 422
        data = response.json()
        assert data["kind"] == "validation_rejected"
        assert data["remaining_stock"] == 3
        assert service.calls == []

    async def test_network_failure_is_502_and_rolled_back(self, api, service):
        service.fail_next("update_line_quantity", NetworkFailure())

        response = await api.put("/cart/items/1", json={"quantity": 5})

        assert response.status_code == 502
        assert response.json()["kind"] == "network_failure"
        cart = (await api.get("/cart")).json()
        assert cart["lines"][0]["quantity"] == 2

    async def test_remove_needs_confirmation(self, api, service):
        response = await api.delete("/cart/items/1")

        assert response.status_code == 409
        assert response.json()["kind"] == "declined"
        assert service.calls == []

        response = await api.delete("/cart/items/1", params={"confirm": "true"})

        assert response.status_code == 200
        cart = (await api.get("/cart")).json()
        assert [line["id"] for line in cart["lines"]] == [2, 3]

    async def test_rejected_removal_is_409(self, api, service):
        service.fail_next("remove_line", RemoteRejected("Cart item not found"))

        response = await api.delete("/cart/items/3", params={"confirm": "true"})

        assert response.status_code == 409
        assert response.json()["message"] == "Cart item not found"

    async def test_selection_changes_totals(self, api):
        response = await api.put("/cart/items/2/selection", json={"selected": False})
        assert response.status_code == 200

        totals = (await api.get("/cart/totals")).json()
        assert totals["subtotal"] == "48"

    async def test_clear_cart(self, api):
        response = await api.delete("/cart", params={"confirm": "true"})

        assert response.status_code == 200
        cart = (await api.get("/cart")).json()
        assert cart["lines"] == []
        assert cart["totals"]["shipping"] == "0"

    async def test_add_to_cart(self, api):
        response = await api.post("/cart/add", json={"product_id": 555, "quantity": 1})

        assert response.status_code == 200
        assert response.json()["line"]["product_id"] == 555

    async def test_coupon(self, api):
        response = await api.post("/cart/coupon", json={"code": "save5"})
        assert response.status_code == 200

        totals = (await api.get("/cart/totals")).json()
        assert totals["discount"] == "5"

        response = await api.delete("/cart/coupon")
        assert response.status_code == 200

    async def test_dropped_outcome_without_kind_is_409(self):
        outcome = MutationOutcome(success=False, message="Replaced by a newer change", superseded=True)

        response = http_server.outcome_response(outcome)

        assert response.status_code == 409

    async def test_empty_coupon_code_is_invalid(self, api, service):
        response = await api.post("/cart/coupon", json={"code": ""})

        assert response.status_code == 422
        assert service.calls == []


@pytest.mark.asyncio
class TestAuthEndpoints:
    async def test_login_refreshes_cart(self, api, client_stub, service):
        response = await api.post("/auth/login", json={"email": "reader@example.com", "password": "secret"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        client_stub.login.assert_awaited_once()
        assert service.call_count("fetch_cart") == 1

    async def test_failed_login(self, api, client_stub, service):
        client_stub.login.return_value = False

        response = await api.post("/auth/login", json={"email": "reader@example.com", "password": "wrong"})

        assert response.json()["success"] is False
        assert service.call_count("fetch_cart") == 0

    async def test_logout(self, api, client_stub):
        response = await api.post("/auth/logout")

        assert response.json()["success"] is True
        client_stub.logout.assert_called_once()
