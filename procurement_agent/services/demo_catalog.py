"""In-memory catalog, cart and checkout services.

Used by the CLI, by the server when ``PROCUREMENT_API_URL`` is not set,
and by the test suite.  State is per process and lost on restart.
"""

from __future__ import annotations

import logging
import threading
import uuid

from procurement_agent.errors import DomainValidationError, LimitExceededError, NotFoundError
from procurement_agent.models import (
    Cart,
    CartAnalytics,
    CartLine,
    CatalogItem,
    PurchaseRequest,
)
from procurement_agent.services.domain import summarize_cart

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 999
MAX_CART_LINES = 50

DEMO_ITEMS: list[CatalogItem] = [
    CatalogItem(
        id="item-usb-c-2m", name="USB-C Cable (2m)", category="Electronics",
        description="High-speed USB-C to USB-C cable for charging and data transfer.",
        price=15.99,
    ),
    CatalogItem(
        id="item-usb-c-1m", name="USB-C Cable (1m)", category="Electronics",
        description="Compact USB-C cable, supports fast charging up to 100W.",
        price=12.49,
    ),
    CatalogItem(
        id="item-desk-converter", name="Standing Desk Converter", category="Office Furniture",
        description="Adjustable height desk riser with dual-tier design.",
        price=189.99,
    ),
    CatalogItem(
        id="item-ergo-keyboard", name="Ergonomic Keyboard", category="Computer Accessories",
        description="Split ergonomic mechanical keyboard with wrist rest.",
        price=129.99, availability="limited",
    ),
    CatalogItem(
        id="item-wireless-mouse", name="Wireless Mouse", category="Computer Accessories",
        description="Precision wireless mouse with 6 programmable buttons.",
        price=34.99,
    ),
    CatalogItem(
        id="item-monitor-arm", name="Monitor Arm Mount", category="Office Furniture",
        description="Single monitor desk mount with full articulation.",
        price=79.99,
    ),
    CatalogItem(
        id="item-laptop-stand", name="Laptop Stand", category="Computer Accessories",
        description="Aluminum laptop stand with adjustable height and angle.",
        price=45.99,
    ),
    CatalogItem(
        id="item-laptop-14", name="Business Laptop 14in", category="Laptops",
        description="14-inch business laptop, 16GB RAM, 512GB SSD.",
        price=899.00,
    ),
    CatalogItem(
        id="item-laptop-16", name="Workstation Laptop 16in", category="Laptops",
        description="16-inch workstation laptop with dedicated GPU, 32GB RAM.",
        price=1899.00, availability="limited",
    ),
    CatalogItem(
        id="item-laptop-13", name="Ultralight Laptop 13in", category="Laptops",
        description="13-inch ultralight laptop for travel, 8GB RAM.",
        price=649.00,
    ),
    CatalogItem(
        id="item-hdmi-3m", name="HDMI Cable (3m)", category="Electronics",
        description="High-speed HDMI 2.1 cable supporting 4K@120Hz.",
        price=19.99, availability="out_of_stock",
    ),
]


def _matches(item: CatalogItem, keyword: str) -> bool:
    """Case-insensitive match on any word of *keyword* (singular/plural tolerant)."""
    haystack = f"{item.name} {item.category} {item.description}".lower()
    for word in keyword.lower().split():
        stem = word[:-1] if len(word) > 3 and word.endswith("s") else word
        if stem in haystack:
            return True
    return False


class InMemoryProcurementServices:
    """``ProcurementServices`` implementation backed by plain dicts."""

    def __init__(self, items: list[CatalogItem] | None = None) -> None:
        self._items: dict[str, CatalogItem] = {
            item.id: item for item in (items if items is not None else DEMO_ITEMS)
        }
        # user_id → item_id → quantity (insertion order is display order)
        self._carts: dict[str, dict[str, int]] = {}
        self._purchase_requests: dict[str, list[PurchaseRequest]] = {}
        self._lock = threading.Lock()

    # ── Catalog ──────────────────────────────────────────────────────

    async def search(
        self,
        keyword: str,
        *,
        max_price: float | None = None,
        limit: int = 10,
    ) -> list[CatalogItem]:
        with self._lock:
            hits = [
                item for item in self._items.values()
                if _matches(item, keyword)
                and (max_price is None or item.price <= max_price)
            ]
        hits.sort(key=lambda item: (item.name.lower(), item.id))
        return hits[:limit]

    async def create_item(
        self,
        user_id: str,
        *,
        name: str,
        category: str,
        description: str,
        estimated_price: float,
    ) -> CatalogItem:
        with self._lock:
            if any(existing.name.lower() == name.lower() for existing in self._items.values()):
                raise DomainValidationError(f'An item named "{name}" already exists in the catalog.')
            item = CatalogItem(
                id=f"item-{uuid.uuid4().hex[:12]}",
                name=name,
                category=category,
                description=description,
                price=estimated_price,
            )
            self._items[item.id] = item
        logger.info("Catalog item %s registered by user %s", item.id, user_id)
        return item

    # ── Cart ─────────────────────────────────────────────────────────

    def _build_cart(self, user_id: str) -> Cart:
        lines = [
            CartLine(
                item_id=item_id,
                item_name=self._items[item_id].name,
                item_price=self._items[item_id].price,
                quantity=quantity,
            )
            for item_id, quantity in self._carts.get(user_id, {}).items()
        ]
        total = round(sum(line.subtotal for line in lines), 2)
        return Cart(items=lines, total_cost=total)

    def _require_item(self, item_id: str) -> CatalogItem:
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"Item {item_id} was not found in the catalog.")
        return item

    async def add_to_cart(self, user_id: str, item_id: str, quantity: int) -> Cart:
        with self._lock:
            item = self._require_item(item_id)
            if item.availability == "out_of_stock":
                raise DomainValidationError(f'"{item.name}" is currently out of stock.')
            cart = self._carts.setdefault(user_id, {})
            if item_id not in cart and len(cart) >= MAX_CART_LINES:
                raise LimitExceededError(f"A cart can hold at most {MAX_CART_LINES} different items.")
            new_quantity = cart.get(item_id, 0) + quantity
            if new_quantity > MAX_LINE_QUANTITY:
                raise LimitExceededError(
                    f"Quantity for one item cannot exceed {MAX_LINE_QUANTITY}."
                )
            cart[item_id] = new_quantity
            return self._build_cart(user_id)

    async def update_quantity(self, user_id: str, item_id: str, new_quantity: int) -> Cart:
        with self._lock:
            cart = self._carts.get(user_id, {})
            if item_id not in cart:
                raise NotFoundError(f"Item {item_id} is not in the cart.")
            if new_quantity > MAX_LINE_QUANTITY:
                raise LimitExceededError(
                    f"Quantity for one item cannot exceed {MAX_LINE_QUANTITY}."
                )
            cart[item_id] = new_quantity
            return self._build_cart(user_id)

    async def remove_from_cart(self, user_id: str, item_id: str) -> Cart:
        with self._lock:
            cart = self._carts.get(user_id, {})
            if cart.pop(item_id, None) is None:
                raise NotFoundError(f"Item {item_id} is not in the cart.")
            return self._build_cart(user_id)

    async def get_cart(self, user_id: str) -> Cart:
        with self._lock:
            return self._build_cart(user_id)

    async def analyze_cart(self, user_id: str) -> CartAnalytics:
        return summarize_cart(await self.get_cart(user_id))

    # ── Checkout ─────────────────────────────────────────────────────

    async def checkout(self, user_id: str, notes: str | None = None) -> PurchaseRequest:
        with self._lock:
            cart = self._build_cart(user_id)
            if not cart.items:
                raise DomainValidationError("Your cart is empty. Add items before checking out.")
            request = PurchaseRequest(
                id=f"PR-{uuid.uuid4().hex[:8].upper()}",
                items=cart.items,
                total_cost=cart.total_cost,
                notes=notes,
            )
            self._purchase_requests.setdefault(user_id, []).append(request)
            self._carts[user_id] = {}
        logger.info(
            "Purchase request %s created for user %s (total %.2f)",
            request.id, user_id, request.total_cost,
        )
        return request

    def purchase_requests_for(self, user_id: str) -> list[PurchaseRequest]:
        with self._lock:
            return list(self._purchase_requests.get(user_id, []))
