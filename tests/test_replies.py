"""Tests for reply texts and rendering metadata."""

from __future__ import annotations

from procurement_agent.errors import ProviderErrorKind, ToolErrorKind
from procurement_agent.llm import ToolCall
from procurement_agent.models import Cart, CartLine, CatalogItem, PurchaseRequest
from procurement_agent.replies import (
    GENERIC_ERROR_REPLY,
    cart_summary,
    collect_metadata,
    compose_direct_reply,
    provider_error_reply,
    summarize_outcomes,
    tool_failure_text,
)
from procurement_agent.tools.executor import ToolOutcome


def _items(prefix: str, count: int) -> list[CatalogItem]:
    return [
        CatalogItem(id=f"{prefix}-{n}", name=f"{prefix.title()} {n}", category="Misc", price=float(n + 1))
        for n in range(count)
    ]


def _search(keyword: str, items: list[CatalogItem]) -> ToolOutcome:
    return ToolOutcome(
        call_id=f"call-{keyword}", tool_name="search_catalog",
        arguments={"keyword": keyword, "limit": 10}, value=items,
    )


def _failed(name: str, kind: ToolErrorKind, message: str = "details") -> ToolOutcome:
    return ToolOutcome.failed(ToolCall(id="c", name=name, arguments={}), kind, message)


class TestSearchReplies:
    def test_single_search(self):
        outcomes = [_search("desk", _items("desk", 3))]
        assert compose_direct_reply(outcomes) == 'Found 3 matching products for "desk":'

    def test_single_result_is_singular(self):
        assert compose_direct_reply([_search("desk", _items("desk", 1))]) == 'Found 1 matching product for "desk":'

    def test_large_result_is_capped(self):
        outcomes = [_search("cable", _items("cable", 14))]

        assert compose_direct_reply(outcomes) == 'Found 14 matching products for "cable". Showing top 10 results:'
        assert len(collect_metadata(outcomes).items) == 10

    def test_no_results(self):
        reply = compose_direct_reply([_search("trampoline", [])])
        assert reply.startswith('No items found matching "trampoline"')
        assert collect_metadata([_search("trampoline", [])]) is None

    def test_multiple_searches_take_five_each_and_dedupe(self):
        shared = _items("shared", 1)
        outcomes = [
            _search("mouse", shared + _items("mouse", 7)),
            _search("keyboard", shared + _items("keyboard", 2)),
        ]

        metadata = collect_metadata(outcomes)

        assert [item.id for item in metadata.items] == [
            "shared-0", "mouse-0", "mouse-1", "mouse-2", "mouse-3", "keyboard-0", "keyboard-1",
        ]
        assert compose_direct_reply(outcomes) == (
            "Found 11 total products across 2 searches (mouse, keyboard). Showing 7 results:"
        )


class TestCartReplies:
    def test_empty_cart(self):
        assert cart_summary(Cart()) == "Your cart is empty."

    def test_cart_summary(self):
        cart = Cart(
            items=[CartLine(item_id="a", item_name="Wireless Mouse", item_price=34.99, quantity=2)],
            total_cost=69.98,
        )
        assert cart_summary(cart) == (
            "Your cart has 1 item type(s), 2 item(s) in total:\n"
            "- 2 × Wireless Mouse ($69.98)\n"
            "Total: $69.98"
        )


class TestMetadata:
    def test_last_cart_wins(self):
        first = Cart(items=[CartLine(item_id="a", item_name="A", item_price=1.0, quantity=1)], total_cost=1.0)
        second = Cart(items=[CartLine(item_id="a", item_name="A", item_price=1.0, quantity=4)], total_cost=4.0)
        outcomes = [
            ToolOutcome(call_id="1", tool_name="add_to_cart", value=first),
            ToolOutcome(call_id="2", tool_name="update_cart_quantity", value=second),
        ]
        assert collect_metadata(outcomes).cart.total_cost == 4.0

    def test_failures_contribute_nothing(self):
        assert collect_metadata([_failed("add_to_cart", ToolErrorKind.NOT_FOUND)]) is None

    def test_error_only(self):
        assert collect_metadata([], error="timeout").error == "timeout"

    def test_checkout_empties_cart(self):
        request = PurchaseRequest(id="PR-1", total_cost=10.0)
        metadata = collect_metadata([ToolOutcome(call_id="1", tool_name="checkout", value=request)])
        assert metadata.purchase_request.id == "PR-1"
        assert metadata.cart.items == []


class TestFailureTexts:
    def test_domain_messages_are_shown(self):
        outcome = _failed("checkout", ToolErrorKind.VALIDATION, "Your cart is empty.")
        assert tool_failure_text(outcome) == "Your cart is empty."

    def test_internal_messages_are_hidden(self):
        outcome = _failed("add_to_cart", ToolErrorKind.INVALID_ARGUMENTS, "quantity: Input should be <= 999")
        assert "999" not in tool_failure_text(outcome)

    def test_provider_replies(self):
        assert "temporarily unavailable" in provider_error_reply(ProviderErrorKind.CIRCUIT_OPEN)
        assert provider_error_reply(ProviderErrorKind.AUTH) == GENERIC_ERROR_REPLY
        assert provider_error_reply(None) == GENERIC_ERROR_REPLY

    def test_summary_marks_each_outcome(self):
        cart = Cart(
            items=[CartLine(item_id="item-1", item_name="Desk", item_price=100.0, quantity=2)], total_cost=200.0,
        )
        outcomes = [
            ToolOutcome(call_id="1", tool_name="add_to_cart", arguments={"itemId": "item-1"}, value=cart),
            _failed("remove_from_cart", ToolErrorKind.NOT_FOUND, "Item item-9 is not in the cart."),
        ]

        assert summarize_outcomes(outcomes) == (
            '✓ Your cart now has 2 × "Desk". Total: $200.00.\n'
            "✗ Item item-9 is not in the cart."
        )
