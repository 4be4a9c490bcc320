"""Tests for the procurement backend HTTP client."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from procurement_agent.errors import DomainValidationError, LimitExceededError, NotFoundError
from procurement_agent.llm import ToolCall
from procurement_agent.services.procurement_client import (
    MAX_RETRIES,
    ProcurementAPIClient,
    ProcurementAPIError,
)
from procurement_agent.tools.executor import ToolExecutor
from procurement_agent.tools.registry import build_default_registry

BASE_URL = "https://procurement.test"

CART_BODY = {
    "cart": {
        "items": [{"itemId": "item-1", "itemName": "Desk", "itemPrice": 100.0, "quantity": 2}],
        "totalCost": 200.0,
    }
}


# ── Helpers ──────────────────────────────────────────────────────────


class Backend:
    """MockTransport handler replaying canned responses and recording requests."""

    def __init__(self, *responses):
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def _client(backend: Backend, token: str | None = "secret-token") -> ProcurementAPIClient:
    return ProcurementAPIClient(BASE_URL, token, transport=httpx.MockTransport(backend))


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("procurement_agent.services.procurement_client.INITIAL_BACKOFF_SECONDS", 0):
        yield


# ── Tests: requests ──────────────────────────────────────────────────


class TestRequests:
    def test_search_sends_query_params(self):
        backend = Backend(
            httpx.Response(200, json={"items": [{"id": "item-1", "name": "Desk", "category": "Office", "price": 100}]})
        )

        items = _run(_client(backend).search("desk", max_price=150, limit=5))

        assert [item.id for item in items] == ["item-1"]
        request = backend.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/api/items"
        assert request.url.params["q"] == "desk"
        assert request.url.params["maxPrice"] == "150"
        assert request.url.params["limit"] == "5"

    def test_search_omits_max_price_when_not_given(self):
        backend = Backend(httpx.Response(200, json={"items": []}))
        _run(_client(backend).search("desk"))
        assert "maxPrice" not in backend.requests[0].url.params

    def test_sends_auth_and_user_headers(self):
        backend = Backend(httpx.Response(200, json=CART_BODY))

        cart = _run(_client(backend).get_cart("user-42"))

        assert cart.total_cost == 200.0
        headers = backend.requests[0].headers
        assert headers["Authorization"] == "Bearer secret-token"
        assert headers["X-User-ID"] == "user-42"

    def test_no_authorization_header_without_token(self):
        backend = Backend(httpx.Response(200, json={"items": []}))
        with patch("procurement_agent.services.procurement_client.PROCUREMENT_API_TOKEN", None):
            _run(_client(backend, token=None).search("desk"))
        assert "Authorization" not in backend.requests[0].headers

    def test_update_quantity_patches_cart_line(self):
        backend = Backend(httpx.Response(200, json=CART_BODY))

        _run(_client(backend).update_quantity("user-1", "item-1", 2))

        request = backend.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/api/cart/items/item-1"
        assert json.loads(request.content) == {"quantity": 2}

    def test_checkout_posts_notes(self):
        backend = Backend(
            httpx.Response(
                201,
                json={"purchaseRequest": {"id": "PR-1", "totalCost": 200.0, "items": [], "createdAt": "2026-01-05T10:00:00Z"}},
            )
        )

        purchase_request = _run(_client(backend).checkout("user-1", "urgent"))

        assert purchase_request.id == "PR-1"
        assert purchase_request.total_cost == 200.0
        assert json.loads(backend.requests[0].content) == {"notes": "urgent"}

    def test_requires_base_url(self):
        with patch("procurement_agent.services.procurement_client.PROCUREMENT_API_URL", None):
            with pytest.raises(ValueError):
                ProcurementAPIClient()


# ── Tests: error mapping ─────────────────────────────────────────────


class TestErrorMapping:
    @pytest.mark.parametrize(
        "status, body, error",
        [
            (404, {"error": {"message": "Item item-9 was not found."}}, NotFoundError),
            (400, {"error": {"message": "Quantity must be positive."}}, DomainValidationError),
            (409, {"error": "Item already exists."}, DomainValidationError),
            (422, {"error": {"message": "Bad field."}}, DomainValidationError),
            (413, {"error": {"message": "Cart is full."}}, LimitExceededError),
            (400, {"error": {"code": "limit_exceeded", "message": "Too many."}}, LimitExceededError),
            (403, {"error": {"message": "Forbidden."}}, ProcurementAPIError),
        ],
    )
    def test_client_errors(self, status, body, error):
        backend = Backend(httpx.Response(status, json=body))

        with pytest.raises(error):
            _run(_client(backend).add_to_cart("user-1", "item-9", 1))

        assert len(backend.requests) == 1

    def test_domain_message_is_preserved(self):
        backend = Backend(httpx.Response(404, json={"error": {"message": "Item item-9 was not found."}}))
        with pytest.raises(NotFoundError, match="item-9 was not found"):
            _run(_client(backend).remove_from_cart("user-1", "item-9"))

    def test_non_json_error_body(self):
        backend = Backend(httpx.Response(400, text="bad request"))
        with pytest.raises(DomainValidationError, match="bad request"):
            _run(_client(backend).get_cart("user-1"))


# ── Tests: retry logic ───────────────────────────────────────────────


class TestRetryLogic:
    def test_get_retries_on_server_error(self):
        backend = Backend(httpx.Response(503), httpx.Response(200, json=CART_BODY))

        cart = _run(_client(backend).get_cart("user-1"))

        assert cart.items[0].item_id == "item-1"
        assert len(backend.requests) == 2

    def test_get_gives_up_after_max_retries(self):
        backend = Backend(httpx.Response(500))

        with pytest.raises(ProcurementAPIError, match="after 3 attempt"):
            _run(_client(backend).get_cart("user-1"))

        assert len(backend.requests) == MAX_RETRIES

    def test_connect_error_is_retried(self):
        backend = Backend(
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"items": []}),
        )

        assert _run(_client(backend).search("desk")) == []
        assert len(backend.requests) == 2

    def test_post_is_not_retried(self):
        backend = Backend(httpx.Response(502))

        with pytest.raises(ProcurementAPIError):
            _run(_client(backend).checkout("user-1"))

        assert len(backend.requests) == 1

    def test_timeout_on_post_is_not_retried(self):
        backend = Backend(httpx.ReadTimeout("too slow"))

        with pytest.raises(ProcurementAPIError):
            _run(_client(backend).add_to_cart("user-1", "item-1", 1))

        assert len(backend.requests) == 1


# ── Tests: response parsing ──────────────────────────────────────────


class TestResponseParsing:
    def test_camel_case_cart(self):
        cart = _run(_client(Backend(httpx.Response(200, json=CART_BODY))).get_cart("user-1"))

        line = cart.items[0]
        assert (line.item_id, line.item_name, line.item_price, line.quantity) == ("item-1", "Desk", 100.0, 2)
        assert cart.total_cost == 200.0

    def test_camel_case_analytics(self):
        body = {
            "analytics": {
                "highestUnitPrice": {"itemName": "Desk", "price": 100.0},
                "averageUnitPrice": 100.0,
                "totalCost": 200.0,
                "uniqueItems": 1,
                "itemCount": 2,
            }
        }

        analytics = _run(_client(Backend(httpx.Response(200, json=body))).analyze_cart("user-1"))

        assert analytics.highest_unit_price.item_name == "Desk"
        assert analytics.total_cost == 200.0
        assert analytics.item_count == 2

    def test_view_cart_tool_against_backend(self, metrics_client):
        client = _client(Backend(httpx.Response(200, json=CART_BODY)))
        executor = ToolExecutor(build_default_registry(), client, metrics=metrics_client)

        outcome = _run(executor.execute(ToolCall(id="call-1", name="view_cart", arguments={}), user_id="user-1"))

        assert outcome.ok
        assert outcome.value.total_cost == 200.0
        assert json.loads(outcome.to_payload())["result"]["items"][0]["item_name"] == "Desk"
