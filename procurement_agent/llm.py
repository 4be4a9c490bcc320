"""Model provider adapter.

The orchestrator and the reliability gateway only ever see the small
value types defined here (``CompletionRequest``, ``Completion``,
``ToolCall``) and the ``ModelProvider`` protocol.  ``AnthropicProvider``
is the production implementation on top of ``langchain-anthropic``;
tests substitute a scripted fake.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, BaseMessage

from procurement_agent.config import (
    ANTHROPIC_API_KEY,
    MODEL_MAX_TOKENS,
    MODEL_NAME,
    MODEL_TEMPERATURE,
    PROVIDER_NAME,
)
from procurement_agent.errors import ProviderErrorKind

logger = logging.getLogger(__name__)

_QUOTA_MARKERS = ("quota", "credit balance", "billing")

# USD per million tokens (input, output), matched by longest model-name prefix.
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4-5": (5.0, 25.0),
    "claude-opus-4": (15.0, 75.0),
    "claude-sonnet-4": (3.0, 15.0),
    "claude-3-7-sonnet": (3.0, 15.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-haiku-4-5": (1.0, 5.0),
    "claude-3-5-haiku": (0.8, 4.0),
    "claude-3-haiku": (0.25, 1.25),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one call; 0.0 for models without a known price."""
    matches = [prefix for prefix in MODEL_PRICING if model.startswith(prefix)]
    if not matches:
        logger.warning("No pricing for model %r; cost recorded as 0", model)
        return 0.0
    input_price, output_price = MODEL_PRICING[max(matches, key=len)]
    return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price


# ── Value types ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompletionRequest:
    """Everything the provider needs for one completion."""

    messages: list[BaseMessage]
    tools: list[dict[str, Any]] = field(default_factory=list)
    temperature: float = MODEL_TEMPERATURE
    max_tokens: int = MODEL_MAX_TOKENS


@dataclass(frozen=True)
class TokenUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def estimated_cost(self) -> float:
        return estimate_cost(self.model, self.input_tokens, self.output_tokens)

    @classmethod
    def from_ai_message(cls, message: AIMessage, default_model: str = "") -> TokenUsage | None:
        usage = message.usage_metadata
        if not usage:
            return None
        metadata = message.response_metadata or {}
        model = metadata.get("model_name") or metadata.get("model") or default_model
        return cls(
            model=model,
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
        )


@dataclass(frozen=True)
class Completion:
    """A provider response: free text, tool calls, or both.

    ``message`` is the raw ``AIMessage`` so the orchestrator can put it
    back into the transcript before the matching ``ToolMessage`` results.
    """

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    message: AIMessage | None = None
    usage: TokenUsage | None = None

    @classmethod
    def from_ai_message(cls, message: AIMessage, default_model: str = "") -> Completion:
        content = message.content
        if isinstance(content, str):
            text = content
        else:
            parts = []
            for block in content:
                if isinstance(block, str):
                    parts.append(block)
                elif block.get("type") == "text":
                    parts.append(block.get("text", ""))
            text = "".join(parts)
        calls = [
            ToolCall(id=call["id"] or "", name=call["name"], arguments=dict(call.get("args") or {}))
            for call in (message.tool_calls or [])
        ]
        return cls(
            text=text.strip(),
            tool_calls=calls,
            message=message,
            usage=TokenUsage.from_ai_message(message, default_model),
        )


class ModelProvider(Protocol):
    name: str

    async def complete(self, request: CompletionRequest) -> Completion: ...


# ── Anthropic ────────────────────────────────────────────────────────


class AnthropicProvider:
    """``ModelProvider`` backed by ``ChatAnthropic``.

    SDK-level retries are disabled: retrying, backoff and timeouts are
    owned by ``ReliabilityGateway``.
    """

    def __init__(
        self,
        model: str = MODEL_NAME,
        api_key: str = ANTHROPIC_API_KEY,
        name: str = PROVIDER_NAME,
    ) -> None:
        self.name = name
        self._model = model
        self._api_key = api_key
        self._clients: dict[tuple[float, int], ChatAnthropic] = {}

    def _client(self, temperature: float, max_tokens: int) -> ChatAnthropic:
        key = (temperature, max_tokens)
        if key not in self._clients:
            self._clients[key] = ChatAnthropic(
                model=self._model,
                api_key=self._api_key,
                temperature=temperature,
                max_tokens=max_tokens,
                max_retries=0,
            )
        return self._clients[key]

    async def complete(self, request: CompletionRequest) -> Completion:
        llm = self._client(request.temperature, request.max_tokens)
        runnable = llm.bind_tools(request.tools) if request.tools else llm
        response = await runnable.ainvoke(request.messages)
        return Completion.from_ai_message(response, default_model=self._model)


# ── Error classification ─────────────────────────────────────────────


def _kind_for_status(status: int, message: str) -> ProviderErrorKind:
    lowered = message.lower()
    if any(marker in lowered for marker in _QUOTA_MARKERS):
        return ProviderErrorKind.QUOTA
    if status in (401, 403):
        return ProviderErrorKind.AUTH
    if status == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status == 408:
        return ProviderErrorKind.TIMEOUT
    if status >= 500:
        return ProviderErrorKind.SERVER_ERROR
    return ProviderErrorKind.MALFORMED_REQUEST


def classify_provider_error(exc: BaseException) -> ProviderErrorKind | None:
    """Map a provider/transport exception to a ``ProviderErrorKind``.

    Returns ``None`` for exceptions that are not provider failures at all
    (programming errors); the gateway lets those propagate untouched.
    """
    if isinstance(exc, (asyncio.TimeoutError, anthropic.APITimeoutError, httpx.TimeoutException)):
        return ProviderErrorKind.TIMEOUT
    if isinstance(exc, (anthropic.APIConnectionError, httpx.TransportError)):
        return ProviderErrorKind.CONNECTION
    if isinstance(exc, anthropic.APIStatusError):
        return _kind_for_status(exc.status_code, str(exc))
    if isinstance(exc, httpx.HTTPStatusError):
        return _kind_for_status(exc.response.status_code, str(exc))

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return _kind_for_status(status, str(exc))
    return None
