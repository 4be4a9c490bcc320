"""Pydantic models for conversations, audit records and domain results."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


# ── Domain results (shapes returned by the capability interface) ─────


class DomainModel(BaseModel):
    """Accepts the backend's camelCase keys as well as field names; dumps use field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CatalogItem(DomainModel):
    """A catalog entry as rendered to the client and to the model."""

    id: str
    name: str
    category: str
    description: str = ""
    price: float
    availability: Literal["in_stock", "out_of_stock", "limited"] = "in_stock"


class CartLine(DomainModel):
    item_id: str
    item_name: str
    item_price: float
    quantity: int

    @property
    def subtotal(self) -> float:
        return round(self.item_price * self.quantity, 2)


class Cart(DomainModel):
    items: list[CartLine] = Field(default_factory=list)
    total_cost: float = 0.0

    @property
    def item_count(self) -> int:
        """Total units across all lines."""
        return sum(line.quantity for line in self.items)

    def find(self, item_id: str) -> CartLine | None:
        return next((line for line in self.items if line.item_id == item_id), None)


class PricedLine(DomainModel):
    item_name: str
    price: float


class CartAnalytics(DomainModel):
    highest_unit_price: PricedLine | None = None
    lowest_unit_price: PricedLine | None = None
    average_unit_price: float = 0.0
    most_expensive_line: CartLine | None = None
    total_cost: float = 0.0
    unique_items: int = 0
    item_count: int = 0


class PurchaseRequest(DomainModel):
    id: str
    items: list[CartLine] = Field(default_factory=list)
    total_cost: float
    status: str = "submitted"
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ── Conversation log ─────────────────────────────────────────────────


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class MessageMetadata(BaseModel):
    """Structured rendering hints for the client.

    Never sent back to the model except as the plain-text cart annotation
    built by ``procurement_agent.prompts``.
    """

    items: list[CatalogItem] | None = None
    cart: Cart | None = None
    purchase_request: PurchaseRequest | None = None
    error: str | None = None

    def is_empty(self) -> bool:
        return not any(
            (self.items, self.cart, self.purchase_request, self.error),
        )


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    metadata: MessageMetadata | None = None


def trim_to_user_turn(messages: list[Message]) -> list[Message]:
    """Drop leading agent replies so a cut history never opens mid-exchange."""
    start = 0
    while start < len(messages) and messages[start].role is MessageRole.AGENT:
        start += 1
    return messages[start:]


class AgentAction(BaseModel):
    """Append-only audit entry for one tool invocation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    status: Literal["success", "failure"]
    result: Any = None
    error_kind: str | None = None
    error_message: str | None = None
    duration_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)


class UsageTotals(BaseModel):
    """Cumulative model usage; cost is an estimate from list prices."""

    model_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def plus(self, other: UsageTotals) -> UsageTotals:
        return UsageTotals(
            model_calls=self.model_calls + other.model_calls,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            estimated_cost_usd=round(self.estimated_cost_usd + other.estimated_cost_usd, 6),
        )


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str | None = None
    title: str = "New conversation"
    last_message_preview: str = "No messages yet"
    status: Literal["in_progress", "completed"] = "in_progress"
    messages: list[Message] = Field(default_factory=list)
    actions: list[AgentAction] = Field(default_factory=list)
    usage: UsageTotals = Field(default_factory=UsageTotals)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def recent_messages(self, window: int) -> list[Message]:
        """Return the last *window* messages as a new list (the log is untouched).

        When the window cuts the log, the result starts on a user turn.
        """
        if window <= 0:
            return []
        recent = self.messages[-window:]
        if len(recent) < len(self.messages):
            recent = trim_to_user_turn(recent)
        return recent


class ConversationSummary(BaseModel):
    id: str
    title: str
    last_message_preview: str
    updated_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> ConversationSummary:
        return cls(
            id=conversation.id,
            title=conversation.title,
            last_message_preview=conversation.last_message_preview,
            updated_at=conversation.updated_at,
        )
