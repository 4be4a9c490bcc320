"""User-facing reply text and rendering metadata.

Everything a user can read about a failure comes from this module.
Provider and unexpected errors map to fixed texts.  Tool failures show
the domain message only for the kinds whose messages are written for
users (validation, not found, limit exceeded).
"""

from __future__ import annotations

from collections.abc import Sequence

from procurement_agent.errors import ProviderErrorKind, ToolErrorKind
from procurement_agent.models import Cart, CartAnalytics, CatalogItem, MessageMetadata, PurchaseRequest
from procurement_agent.tools.executor import ToolOutcome

MAX_ITEMS_SHOWN = 10
MAX_ITEMS_PER_SEARCH = 5  # when several searches run in one turn

GENERIC_ERROR_REPLY = "Sorry, something went wrong while handling your request. Please try again."
PROMPT_TOO_LARGE_REPLY = (
    "This conversation has grown too long for me to process. Please start a new conversation."
)

_PROVIDER_REPLIES: dict[ProviderErrorKind, str] = {
    ProviderErrorKind.RATE_LIMIT: "I'm receiving a lot of requests right now. Please try again in a moment.",
    ProviderErrorKind.THROTTLED: "I'm receiving a lot of requests right now. Please try again in a moment.",
    ProviderErrorKind.CIRCUIT_OPEN: (
        "The assistant is temporarily unavailable. Please try again in a minute, "
        "or use the catalog and cart pages directly."
    ),
    ProviderErrorKind.TIMEOUT: "The assistant took too long to respond. Please try again.",
    ProviderErrorKind.SERVER_ERROR: "The assistant is having trouble right now. Please try again shortly.",
    ProviderErrorKind.CONNECTION: "The assistant is having trouble right now. Please try again shortly.",
    ProviderErrorKind.QUOTA: "The assistant is unavailable at the moment. Please contact your administrator.",
    ProviderErrorKind.AUTH: GENERIC_ERROR_REPLY,
    ProviderErrorKind.MALFORMED_REQUEST: GENERIC_ERROR_REPLY,
}

_TOOL_FAILURE_TEXT: dict[ToolErrorKind, str] = {
    ToolErrorKind.UNKNOWN_TOOL: "I tried an action I'm not able to perform.",
    ToolErrorKind.INVALID_ARGUMENTS: "I couldn't run that action because some details were invalid.",
    ToolErrorKind.AUTHENTICATION_REQUIRED: "You need to be signed in to do that.",
    ToolErrorKind.TIMEOUT: "That action took too long and was cancelled.",
    ToolErrorKind.TOOL_CALL_LIMIT: "I stopped before running every action because there were too many in one request.",
    ToolErrorKind.UNKNOWN: "That action failed unexpectedly.",
}

_DOMAIN_KINDS = frozenset({ToolErrorKind.VALIDATION, ToolErrorKind.NOT_FOUND, ToolErrorKind.LIMIT_EXCEEDED})


def provider_error_reply(kind: ProviderErrorKind | None) -> str:
    if kind is None:
        return GENERIC_ERROR_REPLY
    return _PROVIDER_REPLIES.get(kind, GENERIC_ERROR_REPLY)


def tool_failure_text(outcome: ToolOutcome) -> str:
    failure = outcome.failure
    if failure.kind in _DOMAIN_KINDS:
        return failure.message
    return _TOOL_FAILURE_TEXT.get(failure.kind, _TOOL_FAILURE_TEXT[ToolErrorKind.UNKNOWN])


# ── Rendering metadata ───────────────────────────────────────────────


def _searches(outcomes: Sequence[ToolOutcome]) -> list[ToolOutcome]:
    return [o for o in outcomes if o.ok and o.tool_name == "search_catalog"]


def _search_items(outcomes: Sequence[ToolOutcome]) -> list[CatalogItem]:
    searches = _searches(outcomes)
    per_search = MAX_ITEMS_SHOWN if len(searches) == 1 else MAX_ITEMS_PER_SEARCH
    seen: set[str] = set()
    items: list[CatalogItem] = []
    for outcome in searches:
        for item in outcome.value[:per_search]:
            if item.id not in seen:
                seen.add(item.id)
                items.append(item)
    return items


def collect_metadata(outcomes: Sequence[ToolOutcome], error: str | None = None) -> MessageMetadata | None:
    """Fold successful outcomes into the agent message's rendering metadata.

    The cart is the last cart any tool returned in this turn.
    """
    items = _search_items(outcomes) or None
    cart: Cart | None = None
    purchase_request: PurchaseRequest | None = None
    for outcome in outcomes:
        if not outcome.ok:
            continue
        if isinstance(outcome.value, Cart):
            cart = outcome.value
        elif isinstance(outcome.value, PurchaseRequest):
            purchase_request = outcome.value
            cart = Cart()

    metadata = MessageMetadata(items=items, cart=cart, purchase_request=purchase_request, error=error)
    return None if metadata.is_empty() else metadata


# ── Direct replies (read-only tools) ─────────────────────────────────


def _search_text(outcomes: Sequence[ToolOutcome]) -> str:
    searches = _searches(outcomes)
    keywords = [o.arguments.get("keyword", "") for o in searches]
    total = sum(len(o.value) for o in searches)
    shown = len(_search_items(outcomes))

    if total == 0:
        joined = ", ".join(keywords)
        return f'No items found matching "{joined}". Try different keywords or browse the full catalog.'
    if len(searches) > 1:
        return (
            f"Found {total} total products across {len(searches)} searches "
            f"({', '.join(keywords)}). Showing {shown} results:"
        )
    if total > MAX_ITEMS_SHOWN:
        return f'Found {total} matching products for "{keywords[0]}". Showing top {MAX_ITEMS_SHOWN} results:'
    plural = "" if total == 1 else "s"
    return f'Found {total} matching product{plural} for "{keywords[0]}":'


def cart_summary(cart: Cart) -> str:
    if not cart.items:
        return "Your cart is empty."
    lines = [f"- {line.quantity} × {line.item_name} (${line.subtotal:.2f})" for line in cart.items]
    return (
        f"Your cart has {len(cart.items)} item type(s), {cart.item_count} item(s) in total:\n"
        + "\n".join(lines)
        + f"\nTotal: ${cart.total_cost:.2f}"
    )


def compose_direct_reply(outcomes: Sequence[ToolOutcome]) -> str:
    """Text for a turn made only of successful read-only tool calls."""
    parts = []
    if _searches(outcomes):
        parts.append(_search_text(outcomes))
    carts = [o.value for o in outcomes if o.tool_name == "view_cart"]
    if carts:
        parts.append(cart_summary(carts[-1]))
    return "\n\n".join(parts)


# ── Fallback summary ─────────────────────────────────────────────────


def _describe_success(outcome: ToolOutcome) -> str:
    value = outcome.value
    name = outcome.tool_name
    if name == "search_catalog":
        return f'Found {len(value)} item(s) for "{outcome.arguments.get("keyword", "")}".'
    if name == "register_item":
        return f'Registered "{value.name}" in the catalog.'
    if name in ("add_to_cart", "update_cart_quantity"):
        line = value.find(outcome.arguments.get("itemId", ""))
        if line is None:
            return f"Updated your cart. Total: ${value.total_cost:.2f}."
        return f'Your cart now has {line.quantity} × "{line.item_name}". Total: ${value.total_cost:.2f}.'
    if name == "remove_from_cart":
        return f"Removed the item from your cart. Total: ${value.total_cost:.2f}."
    if name == "view_cart":
        return cart_summary(value)
    if name == "analyze_cart" and isinstance(value, CartAnalytics):
        return (
            f"Your cart has {value.unique_items} item type(s) totalling ${value.total_cost:.2f}; "
            f"average unit price ${value.average_unit_price:.2f}."
        )
    if name == "checkout":
        return f"Submitted purchase request {value.id} for ${value.total_cost:.2f}."
    return f"Completed {name}."


def summarize_outcomes(outcomes: Sequence[ToolOutcome]) -> str:
    """Plain summary of what succeeded and what failed in this turn."""
    lines = []
    for outcome in outcomes:
        if outcome.ok:
            lines.append(f"✓ {_describe_success(outcome)}")
        else:
            lines.append(f"✗ {tool_failure_text(outcome)}")
    return "\n".join(lines)
