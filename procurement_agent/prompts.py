"""System prompt and context assembly for the procurement agent.

``build_messages`` is a pure function: the same conversation, cart
snapshot and user message always produce the same message list.  It
never reads the clock and never mutates the conversation log.
"""

from __future__ import annotations

import logging

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_core.messages.utils import count_tokens_approximately

from procurement_agent.config import HISTORY_WINDOW
from procurement_agent.errors import PromptTooLargeError
from procurement_agent.models import Cart, Conversation, Message, MessageRole, trim_to_user_turn
from procurement_agent.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are a helpful procurement assistant. You help employees find products \
in the company catalog, manage their shopping cart and submit purchase requests.

## Available Tools
{tool_list}

## Price Filtering
When the user states a price limit, ALWAYS pass it to `search_catalog` as `maxPrice`:
- "under $30", "less than $30", "below $30", "no more than $30", "$30 each" → maxPrice: 30
- "Show me laptops under $1000" → search_catalog(keyword: "laptops", maxPrice: 1000)

When the user asks for several different products in one message, call `search_catalog`
once per product.

## Cart Rules
Cart contents appear as `[Cart Context: {{itemId: "...", itemName: "...", quantity: N}}, ...]`.
The "Current Cart" section below is the most recent snapshot.

1. **Adding an item that is NOT in the cart** → `add_to_cart(itemId, quantity)`.
2. **Adding more of an item that IS already in the cart** ("add 3 more", "another one",
   "2 additional") → `update_cart_quantity(itemId, newQuantity)` where
   newQuantity = current quantity + requested amount. NEVER use `add_to_cart` for an item
   that is already in the cart.
3. **Removing some units** ("remove 2 monitors" when there are 5) →
   `update_cart_quantity(itemId, newQuantity)` with newQuantity = current − removed.
4. **Removing an item completely** ("remove all", "delete", or removing every unit) →
   `remove_from_cart(itemId)`.
5. Quantities must be between 1 and 999.
6. Match item names to itemIds using the cart context and earlier search results.
   Never invent an itemId.

Examples:
- "Add USB Cable" (not in cart) → add_to_cart(itemId, quantity: 1)
- "Add 3 more Monitor Arm" (quantity 2 in cart) → update_cart_quantity(itemId, newQuantity: 5)
- "Remove 1 Keyboard" (quantity 3 in cart) → update_cart_quantity(itemId, newQuantity: 2)
- "Remove all Laptops" → remove_from_cart(itemId)

## Checkout
Only call `checkout` when the user explicitly asks to check out or submit the order.

## Style
Be concise and friendly. Format prices as $ with two decimals. If an action fails, explain
what went wrong in plain language and suggest what the user can do next.

## Current Cart
{current_cart}"""

SYSTEM_NOTE_PREFIX = "[System note] "


def format_cart_context(cart: Cart) -> str:
    """Render *cart* as the plain-text annotation the model reads."""
    entries = ", ".join(
        f'{{itemId: "{line.item_id}", itemName: "{line.item_name}", quantity: {line.quantity}}}'
        for line in cart.items
    )
    return f"[Cart Context: {entries}]"


def get_system_prompt(registry: ToolRegistry, cart: Cart | None) -> str:
    tool_list = "\n".join(f"- {name}: {description}" for name, description in registry.descriptions())
    if cart is None:
        current_cart = "Unavailable. Call view_cart if you need it."
    elif not cart.items:
        current_cart = "The cart is empty."
    else:
        current_cart = f"{format_cart_context(cart)}\nTotal: ${cart.total_cost:.2f}"
    return SYSTEM_PROMPT_TEMPLATE.format(tool_list=tool_list, current_cart=current_cart)


def _to_langchain(message: Message) -> BaseMessage:
    content = message.content
    if message.metadata and message.metadata.cart and message.metadata.cart.items:
        content = f"{content}\n{format_cart_context(message.metadata.cart)}"

    if message.role is MessageRole.USER:
        return HumanMessage(content=content)
    if message.role is MessageRole.AGENT:
        return AIMessage(content=content)
    return HumanMessage(content=f"{SYSTEM_NOTE_PREFIX}{content}")


def _fit_history(history: list[Message], budget: int) -> list[Message]:
    """Keep the newest messages whose approximate token count fits *budget*."""
    kept = 0
    used = 0
    for message in reversed(history):
        cost = count_tokens_approximately([_to_langchain(message)])
        if used + cost > budget:
            break
        used += cost
        kept += 1
    if kept == len(history):
        return history
    fitted = trim_to_user_turn(history[len(history) - kept:])
    logger.info(
        "History trimmed to token budget: kept %d of %d messages (~%d of %d tokens)",
        len(fitted), len(history), used, budget,
    )
    return fitted


def build_messages(
    conversation: Conversation,
    cart_snapshot: Cart | None,
    new_user_message: str,
    *,
    registry: ToolRegistry,
    window: int = HISTORY_WINDOW,
    token_budget: int | None = None,
    max_prompt_tokens: int | None = None,
) -> list[BaseMessage]:
    """Assemble the ordered message list for the next completion.

    One system message, then the last *window* persisted messages (older
    history is dropped, not summarised), then the new user message.

    With *token_budget*, history is further trimmed from the oldest end
    until system prompt, history and new message fit in roughly that many
    tokens; the system prompt and new message are always kept.  With
    *max_prompt_tokens*, a prompt still over that limit raises
    ``PromptTooLargeError`` instead of being sent.
    """
    system = SystemMessage(content=get_system_prompt(registry, cart_snapshot))
    latest = HumanMessage(content=new_user_message)

    history = conversation.recent_messages(window)
    if token_budget is not None:
        reserved = count_tokens_approximately([system, latest])
        history = _fit_history(history, max(0, token_budget - reserved))

    messages: list[BaseMessage] = [system]
    messages.extend(_to_langchain(m) for m in history)
    messages.append(latest)

    if max_prompt_tokens is not None:
        total = count_tokens_approximately(messages)
        if total > max_prompt_tokens:
            logger.error("Prompt of ~%d tokens exceeds the %d token limit", total, max_prompt_tokens)
            raise PromptTooLargeError(total, max_prompt_tokens)
    return messages
