"""Capability interface the tool executor depends on.

The engine never talks to a concrete catalog, cart or checkout
implementation directly: it receives an object satisfying
``ProcurementServices`` (the in-memory demo catalog, the HTTP client for
the procurement backend, or a test double).

Every method either returns a domain result model or raises a
``DomainError`` subclass (validation, not-found, limit-exceeded).
"""

from __future__ import annotations

from typing import Protocol

from procurement_agent.models import Cart, CartAnalytics, CatalogItem, PurchaseRequest


class ProcurementServices(Protocol):
    async def search(
        self,
        keyword: str,
        *,
        max_price: float | None = None,
        limit: int = 10,
    ) -> list[CatalogItem]: ...

    async def create_item(
        self,
        user_id: str,
        *,
        name: str,
        category: str,
        description: str,
        estimated_price: float,
    ) -> CatalogItem: ...

    async def add_to_cart(self, user_id: str, item_id: str, quantity: int) -> Cart: ...

    async def update_quantity(self, user_id: str, item_id: str, new_quantity: int) -> Cart: ...

    async def remove_from_cart(self, user_id: str, item_id: str) -> Cart: ...

    async def get_cart(self, user_id: str) -> Cart: ...

    async def analyze_cart(self, user_id: str) -> CartAnalytics: ...

    async def checkout(self, user_id: str, notes: str | None = None) -> PurchaseRequest: ...


def summarize_cart(cart: Cart) -> CartAnalytics:
    """Compute the cart statistics exposed by the ``analyze_cart`` tool.

    Shared by every ``ProcurementServices`` implementation that holds the
    cart locally.
    """
    if not cart.items:
        return CartAnalytics()

    by_price = sorted(cart.items, key=lambda line: line.item_price)
    cheapest, priciest = by_price[0], by_price[-1]
    most_expensive = max(cart.items, key=lambda line: line.subtotal)
    units = cart.item_count

    return CartAnalytics(
        highest_unit_price={"item_name": priciest.item_name, "price": priciest.item_price},
        lowest_unit_price={"item_name": cheapest.item_name, "price": cheapest.item_price},
        average_unit_price=round(cart.total_cost / units, 2) if units else 0.0,
        most_expensive_line=most_expensive,
        total_cost=cart.total_cost,
        unique_items=len(cart.items),
        item_count=units,
    )
