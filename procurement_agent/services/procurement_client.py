"""Async HTTP client for the procurement backend REST API.

Implements ``ProcurementServices`` on top of the backend's catalog, cart
and checkout endpoints.  Requests carry the bearer token from config and
the acting user's id in ``X-User-ID``.

Error mapping
-------------
* 400 / 409 / 422 → ``DomainValidationError``
* 404             → ``NotFoundError``
* 413, or a body with ``{"error": {"code": "limit_exceeded"}}`` → ``LimitExceededError``
* 5xx, timeouts, connection errors → retried (idempotent methods only),
  then ``ProcurementAPIError``
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from procurement_agent.config import PROCUREMENT_API_TOKEN, PROCUREMENT_API_URL
from procurement_agent.errors import DomainValidationError, LimitExceededError, NotFoundError
from procurement_agent.models import Cart, CartAnalytics, CatalogItem, PurchaseRequest
from procurement_agent.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

# POST is not safe to replay (it could create a second purchase request).
_IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "PATCH", "DELETE"})


class ProcurementAPIError(Exception):
    """Raised when the backend is unreachable or keeps failing."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _error_message(response: httpx.Response) -> tuple[str, str | None]:
    """Extract ``(message, code)`` from an error body, tolerating non-JSON."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message", "")), error.get("code")
    if isinstance(error, str):
        return error, None
    return str(body), None


def _raise_for_domain_status(response: httpx.Response) -> None:
    message, code = _error_message(response)
    status = response.status_code
    if status == 413 or code == "limit_exceeded":
        raise LimitExceededError(message or "Limit exceeded.")
    if status == 404:
        raise NotFoundError(message or "Not found.")
    if status in (400, 409, 422):
        raise DomainValidationError(message or "The request was rejected.")
    raise ProcurementAPIError(f"Client error {status}: {message}", status_code=status)


class ProcurementAPIClient:
    """Thin wrapper around the procurement backend with automatic retries."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url or PROCUREMENT_API_URL
        if not self._base_url:
            raise ValueError("PROCUREMENT_API_URL is not configured")
        token = token or PROCUREMENT_API_TOKEN
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── Internal helpers ─────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        user_id: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        """Execute an HTTP request with exponential-backoff retries."""
        headers = {"X-User-ID": user_id} if user_id else None
        attempts = MAX_RETRIES if method in _IDEMPOTENT_METHODS else 1
        operation = f"{method} {path.split('?')[0]}"
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            t0 = time.perf_counter()
            try:
                response = await self._client.request(
                    method, path, params=params, json=json_body, headers=headers,
                )
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code >= 500:
                    metrics.record_failure(
                        "procurement_api", operation, error_type="5xx", latency_ms=elapsed,
                    )
                    last_error = ProcurementAPIError(
                        f"Server error {response.status_code}",
                        status_code=response.status_code,
                    )
                    logger.warning(
                        "Procurement API server error %d on attempt %d/%d",
                        response.status_code, attempt, attempts,
                    )
                elif response.status_code >= 400:
                    metrics.record_failure(
                        "procurement_api", operation, error_type="4xx", latency_ms=elapsed,
                    )
                    _raise_for_domain_status(response)
                else:
                    metrics.record_success("procurement_api", operation, latency_ms=elapsed)
                    if response.status_code == 204 or not response.content:
                        return {}
                    return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                metrics.record_failure(
                    "procurement_api", operation, error_type=type(exc).__name__,
                )
                last_error = exc
                logger.warning(
                    "Procurement API attempt %d/%d failed (%s)",
                    attempt, attempts, type(exc).__name__,
                )

            if attempt < attempts:
                await asyncio.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise ProcurementAPIError(
            f"Procurement API request failed after {attempts} attempt(s): {last_error}"
        )

    # ── Catalog ──────────────────────────────────────────────────────

    async def search(
        self,
        keyword: str,
        *,
        max_price: float | None = None,
        limit: int = 10,
    ) -> list[CatalogItem]:
        params: dict[str, Any] = {"q": keyword, "limit": limit}
        if max_price is not None:
            params["maxPrice"] = max_price
        data = await self._request("GET", "/api/items", params=params)
        return [CatalogItem.model_validate(item) for item in data.get("items", [])]

    async def create_item(
        self,
        user_id: str,
        *,
        name: str,
        category: str,
        description: str,
        estimated_price: float,
    ) -> CatalogItem:
        data = await self._request(
            "POST",
            "/api/items",
            user_id=user_id,
            json_body={
                "name": name,
                "category": category,
                "description": description,
                "estimatedPrice": estimated_price,
            },
        )
        return CatalogItem.model_validate(data["item"])

    # ── Cart ─────────────────────────────────────────────────────────

    async def add_to_cart(self, user_id: str, item_id: str, quantity: int) -> Cart:
        data = await self._request(
            "POST",
            "/api/cart/items",
            user_id=user_id,
            json_body={"itemId": item_id, "quantity": quantity},
        )
        return Cart.model_validate(data["cart"])

    async def update_quantity(self, user_id: str, item_id: str, new_quantity: int) -> Cart:
        data = await self._request(
            "PATCH",
            f"/api/cart/items/{item_id}",
            user_id=user_id,
            json_body={"quantity": new_quantity},
        )
        return Cart.model_validate(data["cart"])

    async def remove_from_cart(self, user_id: str, item_id: str) -> Cart:
        data = await self._request("DELETE", f"/api/cart/items/{item_id}", user_id=user_id)
        return Cart.model_validate(data["cart"])

    async def get_cart(self, user_id: str) -> Cart:
        data = await self._request("GET", "/api/cart", user_id=user_id)
        return Cart.model_validate(data.get("cart", {}))

    async def analyze_cart(self, user_id: str) -> CartAnalytics:
        data = await self._request("GET", "/api/cart/analytics", user_id=user_id)
        return CartAnalytics.model_validate(data["analytics"])

    # ── Checkout ─────────────────────────────────────────────────────

    async def checkout(self, user_id: str, notes: str | None = None) -> PurchaseRequest:
        data = await self._request(
            "POST", "/api/checkout", user_id=user_id, json_body={"notes": notes},
        )
        return PurchaseRequest.model_validate(data["purchaseRequest"])
