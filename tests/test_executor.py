"""Tests for the tool executor: validation, authorization and failure mapping."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from procurement_agent.errors import NotFoundError, ToolErrorKind
from procurement_agent.llm import ToolCall
from procurement_agent.models import Cart, CartLine
from procurement_agent.services.demo_catalog import InMemoryProcurementServices
from procurement_agent.tools.executor import ToolExecutor, ToolOutcome
from procurement_agent.tools.registry import build_default_registry


def _executor(services, metrics_client, **kwargs) -> ToolExecutor:
    return ToolExecutor(build_default_registry(), services, metrics=metrics_client, **kwargs)


def _run(executor: ToolExecutor, name: str, arguments: dict, user_id: str | None = "user-1") -> ToolOutcome:
    return asyncio.run(executor.execute(ToolCall(id="call-1", name=name, arguments=arguments), user_id=user_id))


class TestValidation:
    def test_unknown_tool(self, metrics_client):
        outcome = _run(_executor(MagicMock(), metrics_client), "delete_everything", {})

        assert not outcome.ok
        assert outcome.failure.kind == ToolErrorKind.UNKNOWN_TOOL
        assert outcome.tool_name == "delete_everything"

    @pytest.mark.parametrize("quantity", [0, 10_000])
    def test_out_of_range_quantity_never_reaches_the_service(self, metrics_client, quantity):
        services = MagicMock()
        services.add_to_cart = AsyncMock()

        outcome = _run(
            _executor(services, metrics_client), "add_to_cart", {"itemId": "item-wireless-mouse", "quantity": quantity},
        )

        assert outcome.failure.kind == ToolErrorKind.INVALID_ARGUMENTS
        assert "quantity" in outcome.failure.message
        services.add_to_cart.assert_not_awaited()

    def test_missing_required_argument(self, metrics_client):
        services = MagicMock()
        services.update_quantity = AsyncMock()

        outcome = _run(_executor(services, metrics_client), "update_cart_quantity", {"newQuantity": 3})

        assert outcome.failure.kind == ToolErrorKind.INVALID_ARGUMENTS
        assert "itemId" in outcome.failure.message
        services.update_quantity.assert_not_awaited()

    def test_failed_outcome_keeps_raw_arguments(self, metrics_client):
        outcome = _run(_executor(MagicMock(), metrics_client), "add_to_cart", {"itemId": "x", "quantity": -2})
        assert outcome.arguments == {"itemId": "x", "quantity": -2}


class TestAuthorization:
    def test_mutating_tool_refused_without_user(self, metrics_client):
        services = MagicMock()
        services.add_to_cart = AsyncMock()

        outcome = _run(
            _executor(services, metrics_client), "add_to_cart", {"itemId": "item-wireless-mouse"}, user_id=None,
        )

        assert outcome.failure.kind == ToolErrorKind.AUTHENTICATION_REQUIRED
        services.add_to_cart.assert_not_awaited()

    def test_view_cart_requires_user(self, metrics_client):
        outcome = _run(_executor(InMemoryProcurementServices(), metrics_client), "view_cart", {}, user_id=None)
        assert outcome.failure.kind == ToolErrorKind.AUTHENTICATION_REQUIRED

    def test_search_is_allowed_anonymously(self, metrics_client):
        outcome = _run(
            _executor(InMemoryProcurementServices(), metrics_client), "search_catalog", {"keyword": "cable"},
            user_id=None,
        )
        assert outcome.ok
        assert {item.id for item in outcome.value} == {"item-usb-c-1m", "item-usb-c-2m", "item-hdmi-3m"}


class TestExecution:
    def test_domain_error_kind_is_preserved(self, metrics_client):
        outcome = _run(
            _executor(InMemoryProcurementServices(), metrics_client), "update_cart_quantity",
            {"itemId": "item-wireless-mouse", "newQuantity": 2},
        )

        assert outcome.failure.kind == ToolErrorKind.NOT_FOUND
        assert "not in the cart" in outcome.failure.message

    def test_not_found_from_a_mocked_service(self, metrics_client):
        services = MagicMock()
        services.remove_from_cart = AsyncMock(side_effect=NotFoundError("Item x is not in the cart."))

        outcome = _run(_executor(services, metrics_client), "remove_from_cart", {"itemId": "x"})

        assert outcome.failure.kind == ToolErrorKind.NOT_FOUND
        services.remove_from_cart.assert_awaited_once_with("user-1", "x")

    def test_slow_handler_times_out(self, metrics_client):
        async def slow_search(keyword, *, max_price=None, limit=10):
            await asyncio.sleep(5)

        services = MagicMock()
        services.search = slow_search

        outcome = _run(_executor(services, metrics_client, timeout=0.01), "search_catalog", {"keyword": "desk"})

        assert outcome.failure.kind == ToolErrorKind.TIMEOUT
        assert outcome.duration_ms > 0

    def test_unexpected_error_is_not_leaked(self, metrics_client):
        services = MagicMock()
        services.get_cart = AsyncMock(side_effect=RuntimeError("db password is hunter2"))

        outcome = _run(_executor(services, metrics_client), "view_cart", {})

        assert outcome.failure.kind == ToolErrorKind.UNKNOWN
        assert "hunter2" not in outcome.failure.message

    def test_success_returns_service_value_verbatim(self, metrics_client):
        cart = Cart(items=[CartLine(item_id="a", item_name="A", item_price=2.0, quantity=3)], total_cost=6.0)
        services = MagicMock()
        services.get_cart = AsyncMock(return_value=cart)

        outcome = _run(_executor(services, metrics_client), "view_cart", {})

        assert outcome.ok
        assert outcome.value is cart
        services.get_cart.assert_awaited_once_with("user-1")

    def test_normalized_arguments_include_defaults(self, metrics_client):
        outcome = _run(
            _executor(InMemoryProcurementServices(), metrics_client), "search_catalog",
            {"keyword": "laptops", "maxPrice": 1000},
        )
        assert outcome.arguments == {"keyword": "laptops", "maxPrice": 1000.0, "limit": 10}

    def test_search_is_idempotent(self, metrics_client):
        executor = _executor(InMemoryProcurementServices(), metrics_client)
        first = _run(executor, "search_catalog", {"keyword": "laptops", "maxPrice": 1000})
        second = _run(executor, "search_catalog", {"keyword": "laptops", "maxPrice": 1000})
        assert [item.id for item in first.value] == [item.id for item in second.value]

    def test_records_tool_metrics(self, metrics_client):
        _run(_executor(InMemoryProcurementServices(), metrics_client), "search_catalog", {"keyword": "desk"})

        names = [point["MetricName"] for point in metrics_client._buffer]
        assert "ExternalAPI/RequestCount" in names
        assert "ExternalAPI/Latency" in names


class TestOutcomeRendering:
    def test_success_payload(self, metrics_client):
        outcome = _run(
            _executor(InMemoryProcurementServices(), metrics_client), "search_catalog", {"keyword": "stand"},
        )

        payload = json.loads(outcome.to_payload())
        assert payload["ok"] is True
        assert payload["result"][0]["id"] == "item-laptop-stand"

    def test_failure_payload(self):
        outcome = ToolOutcome.failed(
            ToolCall(id="c", name="checkout", arguments={}), ToolErrorKind.VALIDATION, "Your cart is empty.",
        )

        payload = json.loads(outcome.to_payload())
        assert payload == {"ok": False, "error": {"kind": "validation", "message": "Your cart is empty."}}

    def test_to_action(self):
        outcome = ToolOutcome.failed(
            ToolCall(id="c", name="add_to_cart", arguments={"itemId": "x"}),
            ToolErrorKind.NOT_FOUND, "missing", duration_ms=12.34,
        )

        action = outcome.to_action()
        assert action.tool_call_id == "c"
        assert action.status == "failure"
        assert action.error_kind == "not_found"
        assert action.result is None
        assert action.duration_ms == 12.3
