"""Tests for the tool registry and argument schemas."""

from __future__ import annotations

import pytest
from pydantic import BaseModel, ValidationError

from procurement_agent.errors import ToolRegistrationError
from procurement_agent.tools.registry import (
    AddToCartArgs,
    SearchCatalogArgs,
    ToolArgs,
    ToolRegistry,
    ToolSpec,
    UpdateCartQuantityArgs,
    build_default_registry,
)


async def _noop(services, args, user_id):
    return None


class TestDefaultRegistry:
    def test_exposes_the_eight_procurement_tools(self):
        registry = build_default_registry()
        assert registry.names() == [
            "search_catalog",
            "register_item",
            "add_to_cart",
            "update_cart_quantity",
            "remove_from_cart",
            "view_cart",
            "analyze_cart",
            "checkout",
        ]

    def test_mutating_tools_need_a_user(self):
        registry = build_default_registry()
        for name in ("register_item", "add_to_cart", "update_cart_quantity", "remove_from_cart", "checkout"):
            spec = registry.get(name)
            assert spec.mutating and spec.needs_user
        assert not registry.get("search_catalog").needs_user

    def test_only_search_and_view_cart_reply_directly(self):
        registry = build_default_registry()
        direct = {name for name in registry.names() if registry.get(name).direct_reply}
        assert direct == {"search_catalog", "view_cart"}

    def test_tool_schemas_use_camel_case_names(self):
        schemas = {s["name"]: s for s in build_default_registry().tool_schemas()}

        search = schemas["search_catalog"]["input_schema"]
        assert set(search["properties"]) == {"keyword", "maxPrice", "limit"}
        assert search["required"] == ["keyword"]

        update = schemas["update_cart_quantity"]["input_schema"]
        assert set(update["required"]) == {"itemId", "newQuantity"}
        assert update["properties"]["newQuantity"]["maximum"] == 999

    def test_argument_free_tools_still_have_an_object_schema(self):
        schemas = {s["name"]: s for s in build_default_registry().tool_schemas()}
        view = schemas["view_cart"]["input_schema"]
        assert view["type"] == "object"
        assert view["properties"] == {}


class TestArgumentModels:
    def test_accepts_camel_case_and_snake_case(self):
        assert SearchCatalogArgs.model_validate({"keyword": "laptops", "maxPrice": 1000}).max_price == 1000
        assert SearchCatalogArgs.model_validate({"keyword": "laptops", "max_price": 1000}).max_price == 1000

    @pytest.mark.parametrize("quantity", [0, -1, 1000, 10_000])
    def test_quantity_bounds(self, quantity):
        with pytest.raises(ValidationError):
            AddToCartArgs.model_validate({"itemId": "item-1", "quantity": quantity})

    def test_rejects_unknown_keys(self):
        with pytest.raises(ValidationError):
            UpdateCartQuantityArgs.model_validate({"itemId": "x", "newQuantity": 2, "delta": 1})

    def test_strips_whitespace(self):
        args = SearchCatalogArgs.model_validate({"keyword": "  usb cable  "})
        assert args.keyword == "usb cable"
        assert args.limit == 10

    def test_blank_keyword_is_rejected(self):
        with pytest.raises(ValidationError):
            SearchCatalogArgs.model_validate({"keyword": "   "})


class TestRegistration:
    def _spec(self, **overrides) -> ToolSpec:
        params = {
            "name": "custom_tool",
            "description": "Does something.",
            "args_model": ToolArgs,
            "handler": _noop,
        }
        params.update(overrides)
        return ToolSpec(**params)

    def test_registers_valid_spec(self):
        registry = ToolRegistry([self._spec()])
        assert "custom_tool" in registry
        assert len(registry) == 1

    def test_rejects_duplicate_name(self):
        registry = ToolRegistry([self._spec()])
        with pytest.raises(ToolRegistrationError, match="already registered"):
            registry.register(self._spec())

    @pytest.mark.parametrize("name", ["", "Search", "has space", "1tool"])
    def test_rejects_invalid_name(self, name):
        with pytest.raises(ToolRegistrationError):
            ToolRegistry([self._spec(name=name)])

    def test_rejects_missing_argument_model(self):
        with pytest.raises(ToolRegistrationError, match="pydantic"):
            ToolRegistry([self._spec(args_model=dict)])

    def test_rejects_sync_handler(self):
        def sync_handler(services, args, user_id):
            return None

        with pytest.raises(ToolRegistrationError, match="async"):
            ToolRegistry([self._spec(handler=sync_handler)])

    def test_rejects_empty_description(self):
        with pytest.raises(ToolRegistrationError):
            ToolRegistry([self._spec(description="  ")])

    def test_get_unknown_returns_none(self):
        assert ToolRegistry().get("nope") is None

    def test_base_model_subclass_is_accepted(self):
        class Plain(BaseModel):
            value: int = 0

        registry = ToolRegistry([self._spec(args_model=Plain)])
        assert registry.get("custom_tool").args_model is Plain
