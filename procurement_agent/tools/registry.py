"""Tool registry: the fixed table of tools the model may call.

Each tool is a ``ToolSpec`` binding a name and description to a pydantic
argument model and an async handler over ``ProcurementServices``.  The
registry validates every spec when it is registered, so a tool cannot be
added without an argument schema, and it renders the provider-facing
tool schemas straight from those models.

Argument models accept the camelCase names the model sees
(``maxPrice``, ``itemId``, ``newQuantity``) as well as the snake_case
field names, and reject unknown keys.
"""

from __future__ import annotations

import inspect
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from procurement_agent.errors import ToolRegistrationError
from procurement_agent.services.domain import ProcurementServices

MAX_QUANTITY = 999
MAX_SEARCH_RESULTS = 50

_TOOL_NAME = re.compile(r"^[a-z][a-z0-9_]{0,63}$")

Handler = Callable[[ProcurementServices, Any, str | None], Awaitable[Any]]


# ── Argument schemas ─────────────────────────────────────────────────


class ToolArgs(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class SearchCatalogArgs(ToolArgs):
    keyword: str = Field(..., min_length=1, max_length=200, description="Search keyword, e.g. 'laptops'")
    max_price: float | None = Field(default=None, ge=0, description="Only return items at or below this unit price")
    limit: int = Field(default=10, ge=1, le=MAX_SEARCH_RESULTS, description="Maximum number of results")


class RegisterItemArgs(ToolArgs):
    name: str = Field(..., min_length=2, max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    estimated_price: float = Field(..., gt=0, description="Estimated unit price in USD")


class AddToCartArgs(ToolArgs):
    item_id: str = Field(..., min_length=1, max_length=100, description="Catalog item id")
    quantity: int = Field(default=1, ge=1, le=MAX_QUANTITY)


class UpdateCartQuantityArgs(ToolArgs):
    item_id: str = Field(..., min_length=1, max_length=100, description="Id of an item already in the cart")
    new_quantity: int = Field(..., ge=1, le=MAX_QUANTITY, description="The new total quantity for this item")


class RemoveFromCartArgs(ToolArgs):
    item_id: str = Field(..., min_length=1, max_length=100)


class ViewCartArgs(ToolArgs):
    pass


class AnalyzeCartArgs(ToolArgs):
    pass


class CheckoutArgs(ToolArgs):
    notes: str | None = Field(default=None, max_length=1000, description="Optional notes for the purchase request")


# ── Registry ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolSpec:
    """One callable tool.

    ``mutating`` tools change server-side state; together with
    ``requires_user`` they are refused for anonymous callers.
    ``direct_reply`` tools have results that render straight into the
    client message, so a turn made only of them skips the follow-up
    model call.
    """

    name: str
    description: str
    args_model: type[BaseModel]
    handler: Handler
    mutating: bool = False
    requires_user: bool = False
    direct_reply: bool = False

    @property
    def needs_user(self) -> bool:
        return self.mutating or self.requires_user


class ToolRegistry:
    def __init__(self, specs: list[ToolSpec] | None = None) -> None:
        self._specs: dict[str, ToolSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        if not _TOOL_NAME.match(spec.name):
            raise ToolRegistrationError(f"Invalid tool name {spec.name!r}")
        if spec.name in self._specs:
            raise ToolRegistrationError(f"Tool {spec.name!r} is already registered")
        if not (isinstance(spec.args_model, type) and issubclass(spec.args_model, BaseModel)):
            raise ToolRegistrationError(f"Tool {spec.name!r} needs a pydantic argument model")
        if not inspect.iscoroutinefunction(spec.handler):
            raise ToolRegistrationError(f"Tool {spec.name!r} handler must be an async function")
        if not spec.description.strip():
            raise ToolRegistrationError(f"Tool {spec.name!r} needs a description")
        self._specs[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def names(self) -> list[str]:
        return list(self._specs)

    def tool_schemas(self) -> list[dict[str, Any]]:
        """Tool definitions in the provider's ``{name, description, input_schema}`` shape."""
        schemas = []
        for spec in self._specs.values():
            input_schema = spec.args_model.model_json_schema(by_alias=True)
            input_schema.pop("title", None)
            input_schema.setdefault("properties", {})
            schemas.append(
                {"name": spec.name, "description": spec.description, "input_schema": input_schema}
            )
        return schemas

    def descriptions(self) -> list[tuple[str, str]]:
        return [(spec.name, spec.description) for spec in self._specs.values()]


# ── Handlers ─────────────────────────────────────────────────────────


async def _search_catalog(services: ProcurementServices, args: SearchCatalogArgs, user_id: str | None):
    return await services.search(args.keyword, max_price=args.max_price, limit=args.limit)


async def _register_item(services: ProcurementServices, args: RegisterItemArgs, user_id: str | None):
    return await services.create_item(
        user_id,
        name=args.name,
        category=args.category,
        description=args.description,
        estimated_price=args.estimated_price,
    )


async def _add_to_cart(services: ProcurementServices, args: AddToCartArgs, user_id: str | None):
    return await services.add_to_cart(user_id, args.item_id, args.quantity)


async def _update_cart_quantity(
    services: ProcurementServices, args: UpdateCartQuantityArgs, user_id: str | None,
):
    return await services.update_quantity(user_id, args.item_id, args.new_quantity)


async def _remove_from_cart(services: ProcurementServices, args: RemoveFromCartArgs, user_id: str | None):
    return await services.remove_from_cart(user_id, args.item_id)


async def _view_cart(services: ProcurementServices, args: ViewCartArgs, user_id: str | None):
    return await services.get_cart(user_id)


async def _analyze_cart(services: ProcurementServices, args: AnalyzeCartArgs, user_id: str | None):
    return await services.analyze_cart(user_id)


async def _checkout(services: ProcurementServices, args: CheckoutArgs, user_id: str | None):
    return await services.checkout(user_id, args.notes)


def build_default_registry() -> ToolRegistry:
    """The eight procurement tools, in the order they are presented to the model."""
    return ToolRegistry(
        [
            ToolSpec(
                name="search_catalog",
                description="Search the product catalog by keyword, optionally capped at a maximum unit price.",
                args_model=SearchCatalogArgs,
                handler=_search_catalog,
                direct_reply=True,
            ),
            ToolSpec(
                name="register_item",
                description="Register a new item in the catalog when the user needs something that does not exist yet.",
                args_model=RegisterItemArgs,
                handler=_register_item,
                mutating=True,
            ),
            ToolSpec(
                name="add_to_cart",
                description="Add an item that is NOT yet in the cart, with a quantity between 1 and 999.",
                args_model=AddToCartArgs,
                handler=_add_to_cart,
                mutating=True,
            ),
            ToolSpec(
                name="update_cart_quantity",
                description="Set the total quantity of an item that is ALREADY in the cart.",
                args_model=UpdateCartQuantityArgs,
                handler=_update_cart_quantity,
                mutating=True,
            ),
            ToolSpec(
                name="remove_from_cart",
                description="Remove an item from the cart entirely.",
                args_model=RemoveFromCartArgs,
                handler=_remove_from_cart,
                mutating=True,
            ),
            ToolSpec(
                name="view_cart",
                description="Show the current cart contents and total.",
                args_model=ViewCartArgs,
                handler=_view_cart,
                requires_user=True,
                direct_reply=True,
            ),
            ToolSpec(
                name="analyze_cart",
                description="Get cart statistics: highest, lowest and average unit price, and the most expensive line.",
                args_model=AnalyzeCartArgs,
                handler=_analyze_cart,
                requires_user=True,
            ),
            ToolSpec(
                name="checkout",
                description="Submit the cart as a purchase request. Only call this when the user explicitly asks to check out.",
                args_model=CheckoutArgs,
                handler=_checkout,
                mutating=True,
            ),
        ]
    )
