"""LangGraph-based turn orchestrator for the procurement assistant.

Architecture:
  One user turn runs through a LangGraph StateGraph with three nodes:

    1. **call_model**     sends the transcript plus tool schemas through the
                          ``ReliabilityGateway``
    2. **execute_tools**  runs the requested tool calls sequentially via
                          the ``ToolExecutor``
    3. **compose_reply**  turns the model text and/or tool outcomes into
                          the user-facing reply

  Routing:
    call_model → (tool calls?)  → execute_tools → (follow-up needed?) → call_model
                                                → (direct reply / cap hit) → compose_reply
               → (final text / provider error) → compose_reply → END

  Read-only tools whose results render directly (search, view cart) end
  the turn without a second model call.  Any mutating or analytical tool
  sends the outcomes back to the model for a conversational confirmation.

  Turn phases:
    IDLE → CONTEXT_BUILT → AWAITING_MODEL → TOOL_CALLS_PENDING | FINAL_REPLY_READY
         → PERSISTED  (or ERROR_PERSISTED when the reply is an error reply)

  Memory:
    History lives in the ``ConversationStore``; the graph is compiled
    without a checkpointer and every turn starts from the persisted log.
    Tool outcomes are collected on a per-turn ``TurnContext`` passed in
    the run config, so actions already executed are still recorded if a
    later step fails.  The prompt carries at most ``HISTORY_WINDOW``
    messages of history, further trimmed to ``HISTORY_TOKEN_BUDGET``.
    Token usage of every model call is summed on the ``TurnContext`` and
    added to the conversation's running totals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Annotated

from langchain_core.messages import AIMessage, AnyMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from procurement_agent.config import (
    HISTORY_TOKEN_BUDGET,
    HISTORY_WINDOW,
    MAX_MESSAGE_LENGTH,
    MAX_MODEL_ROUNDS,
    MAX_PROMPT_TOKENS,
    MAX_TOOL_CALLS_PER_TURN,
    PROCUREMENT_API_URL,
)
from procurement_agent.errors import PromptTooLargeError, ProviderError, ToolErrorKind, TurnValidationError
from procurement_agent.llm import Completion, CompletionRequest, ToolCall
from procurement_agent.models import AgentAction, Cart, Message, MessageRole, UsageTotals, new_id
from procurement_agent.prompts import build_messages
from procurement_agent.replies import (
    GENERIC_ERROR_REPLY,
    PROMPT_TOO_LARGE_REPLY,
    collect_metadata,
    compose_direct_reply,
    provider_error_reply,
    summarize_outcomes,
)
from procurement_agent.services.conversation_store import ConversationStore, InMemoryConversationStore
from procurement_agent.services.domain import ProcurementServices
from procurement_agent.services.reliability import ReliabilityGateway, build_gateway
from procurement_agent.tools.executor import ToolExecutor, ToolOutcome
from procurement_agent.tools.registry import ToolRegistry, build_default_registry

logger = logging.getLogger(__name__)

EMPTY_COMPLETION_REPLY = "I'm sorry, I couldn't work out how to help with that. Could you rephrase your request?"
PARTIAL_PREFIX = "Here's what happened before the interruption:"


class TurnPhase(str, Enum):
    IDLE = "idle"
    CONTEXT_BUILT = "context_built"
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    FINAL_REPLY_READY = "final_reply_ready"
    PERSISTED = "persisted"
    ERROR_PERSISTED = "error_persisted"


# ── Turn request / result ────────────────────────────────────────────


@dataclass(frozen=True)
class TurnRequest:
    user_id: str | None
    message: str
    conversation_id: str | None = None


@dataclass(frozen=True)
class TurnResult:
    conversation_id: str
    messages: list[Message]
    actions: list[AgentAction]
    phase: TurnPhase


@dataclass
class TurnContext:
    """Mutable per-turn scratchpad shared by the graph nodes."""

    user_id: str | None
    outcomes: list[ToolOutcome] = field(default_factory=list)
    provider_error: ProviderError | None = None
    usage: UsageTotals = field(default_factory=UsageTotals)

    def record_completion(self, completion: Completion) -> None:
        usage = completion.usage
        call = UsageTotals(model_calls=1)
        if usage is not None:
            call = UsageTotals(
                model_calls=1,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                estimated_cost_usd=usage.estimated_cost,
            )
        self.usage = self.usage.plus(call)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """State flowing through the turn graph.

    ``messages`` uses the ``add_messages`` reducer so nodes append to the
    transcript.  ``pending`` holds the tool calls of the last completion;
    ``next_step`` is set by ``execute_tools`` for the conditional edge.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    phase: TurnPhase
    model_rounds: int
    tool_calls_used: int
    pending: list[ToolCall]
    final_text: str
    next_step: str
    direct: bool
    capped: bool


def _turn(run_config: RunnableConfig) -> TurnContext:
    return run_config["configurable"]["turn"]


def _ai_message(completion: Completion, calls: list[ToolCall]) -> AIMessage:
    """The assistant message for the transcript, rebuilt when call ids were filled in."""
    if completion.message is not None and calls == completion.tool_calls:
        return completion.message
    return AIMessage(
        content=completion.text,
        tool_calls=[{"id": c.id, "name": c.name, "args": c.arguments} for c in calls],
    )


# ── Graph assembly ───────────────────────────────────────────────────


def create_turn_graph(
    gateway: ReliabilityGateway,
    registry: ToolRegistry,
    executor: ToolExecutor,
    *,
    max_tool_calls: int = MAX_TOOL_CALLS_PER_TURN,
    max_model_rounds: int = MAX_MODEL_ROUNDS,
):
    """Build and compile the per-turn StateGraph.

    Invoke with::

        graph.ainvoke(initial_state, config={"configurable": {"turn": TurnContext(...)}})
    """
    tool_schemas = registry.tool_schemas()

    def renders_directly(outcome: ToolOutcome) -> bool:
        spec = registry.get(outcome.tool_name)
        return outcome.ok and spec is not None and spec.direct_reply

    async def call_model(state: TurnState, config: RunnableConfig) -> dict:
        turn = _turn(config)
        if state["model_rounds"] >= max_model_rounds:
            logger.warning("Model round limit (%d) reached; composing reply", max_model_rounds)
            return {"phase": TurnPhase.FINAL_REPLY_READY, "final_text": "", "pending": []}

        logger.debug("Turn phase → %s (round %d)", TurnPhase.AWAITING_MODEL.value, state["model_rounds"] + 1)
        request = CompletionRequest(messages=list(state["messages"]), tools=tool_schemas)
        try:
            completion = await gateway.execute(request)
        except ProviderError as exc:
            logger.warning("Provider call failed (%s): %s", exc.kind.value, exc)
            turn.provider_error = exc
            return {"phase": TurnPhase.FINAL_REPLY_READY, "final_text": "", "pending": []}

        turn.record_completion(completion)
        rounds = state["model_rounds"] + 1
        if completion.tool_calls:
            calls = [c if c.id else replace(c, id=f"call_{new_id()}") for c in completion.tool_calls]
            logger.debug("Model requested %d tool call(s): %s", len(calls), [c.name for c in calls])
            return {
                "messages": [_ai_message(completion, calls)],
                "pending": calls,
                "phase": TurnPhase.TOOL_CALLS_PENDING,
                "model_rounds": rounds,
            }
        return {
            "messages": [_ai_message(completion, [])],
            "pending": [],
            "final_text": completion.text,
            "phase": TurnPhase.FINAL_REPLY_READY,
            "model_rounds": rounds,
        }

    async def execute_tools(state: TurnState, config: RunnableConfig) -> dict:
        turn = _turn(config)
        used = state["tool_calls_used"]
        capped = False
        tool_messages = []

        # Sequential on purpose: later calls may depend on earlier mutations.
        for call in state["pending"]:
            if used >= max_tool_calls:
                capped = True
                logger.warning("Tool call limit (%d) reached; skipping %s", max_tool_calls, call.name)
                outcome = ToolOutcome.failed(
                    call, ToolErrorKind.TOOL_CALL_LIMIT,
                    f"Skipped: at most {max_tool_calls} tool calls are allowed per request.",
                )
            else:
                outcome = await executor.execute(call, user_id=turn.user_id)
                used += 1
            turn.outcomes.append(outcome)
            tool_messages.append(
                ToolMessage(content=outcome.to_payload(), tool_call_id=call.id, name=call.name)
            )

        direct = all(renders_directly(o) for o in turn.outcomes)
        if capped or direct:
            return {
                "messages": tool_messages,
                "tool_calls_used": used,
                "pending": [],
                "capped": capped,
                "direct": direct and not capped,
                "next_step": "compose_reply",
                "phase": TurnPhase.FINAL_REPLY_READY,
            }
        return {
            "messages": tool_messages,
            "tool_calls_used": used,
            "pending": [],
            "next_step": "call_model",
            "phase": TurnPhase.AWAITING_MODEL,
        }

    async def compose_reply(state: TurnState, config: RunnableConfig) -> dict:
        turn = _turn(config)
        outcomes = turn.outcomes
        if turn.provider_error is not None:
            text = provider_error_reply(turn.provider_error.kind)
            if outcomes:
                text = f"{text}\n\n{PARTIAL_PREFIX}\n{summarize_outcomes(outcomes)}"
        elif state["direct"]:
            text = compose_direct_reply(outcomes)
        elif state["capped"]:
            text = summarize_outcomes(outcomes)
        elif state["final_text"]:
            text = state["final_text"]
        elif outcomes:
            text = summarize_outcomes(outcomes)
        else:
            text = EMPTY_COMPLETION_REPLY
        return {"final_text": text, "phase": TurnPhase.FINAL_REPLY_READY}

    def after_model(state: TurnState) -> str:
        if state["phase"] == TurnPhase.TOOL_CALLS_PENDING:
            return "execute_tools"
        return "compose_reply"

    def after_tools(state: TurnState) -> str:
        return state["next_step"]

    graph = StateGraph(TurnState)
    graph.add_node("call_model", call_model)
    graph.add_node("execute_tools", execute_tools)
    graph.add_node("compose_reply", compose_reply)

    graph.set_entry_point("call_model")
    graph.add_conditional_edges(
        "call_model", after_model,
        {"execute_tools": "execute_tools", "compose_reply": "compose_reply"},
    )
    graph.add_conditional_edges(
        "execute_tools", after_tools,
        {"call_model": "call_model", "compose_reply": "compose_reply"},
    )
    graph.add_edge("compose_reply", END)

    compiled = graph.compile()
    logger.debug(
        "Turn graph compiled: tools=%d, max_tool_calls=%d, max_model_rounds=%d",
        len(registry), max_tool_calls, max_model_rounds,
    )
    return compiled


# ── Orchestrator ─────────────────────────────────────────────────────


class TurnOrchestrator:
    """Drives one user turn from inbound message to persisted reply."""

    def __init__(
        self,
        gateway: ReliabilityGateway,
        registry: ToolRegistry,
        executor: ToolExecutor,
        services: ProcurementServices,
        store: ConversationStore,
        *,
        history_window: int = HISTORY_WINDOW,
        history_token_budget: int = HISTORY_TOKEN_BUDGET,
        max_prompt_tokens: int = MAX_PROMPT_TOKENS,
        max_message_length: int = MAX_MESSAGE_LENGTH,
        max_tool_calls: int = MAX_TOOL_CALLS_PER_TURN,
        max_model_rounds: int = MAX_MODEL_ROUNDS,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.services = services
        self.store = store
        self._history_window = history_window
        self._history_token_budget = history_token_budget or None
        self._max_prompt_tokens = max_prompt_tokens or None
        self._max_message_length = max_message_length
        self._recursion_limit = 2 * max_model_rounds + 5
        self._graph = create_turn_graph(
            gateway, registry, executor,
            max_tool_calls=max_tool_calls,
            max_model_rounds=max_model_rounds,
        )

    def _validate(self, message: str) -> str:
        text = (message or "").strip()
        if not text:
            raise TurnValidationError("Message cannot be empty.")
        if len(text) > self._max_message_length:
            raise TurnValidationError(
                f"Message is too long ({len(text)} characters; maximum is {self._max_message_length})."
            )
        return text

    async def _cart_snapshot(self, user_id: str | None) -> Cart | None:
        if not user_id:
            return None
        try:
            return await self.services.get_cart(user_id)
        except Exception as exc:
            logger.warning("Cart snapshot unavailable for user %s: %s", user_id, exc)
            return None

    async def handle_turn(self, request: TurnRequest) -> TurnResult:
        """Run one turn.

        Raises ``TurnValidationError``, ``ConversationNotFoundError`` or
        ``ConversationAccessError`` before anything is persisted.  Every
        other failure is turned into an apologetic reply that is
        persisted alongside the user message.
        """
        text = self._validate(request.message)
        conversation = await self.store.load_or_create(
            request.conversation_id, request.user_id, title=text,
        )
        logger.debug("Turn phase → %s (conversation %s)", TurnPhase.IDLE.value, conversation.id)

        turn = TurnContext(user_id=request.user_id)
        user_message = Message(role=MessageRole.USER, content=text)
        try:
            cart = await self._cart_snapshot(request.user_id)
            messages = build_messages(
                conversation, cart, text,
                registry=self.registry, window=self._history_window,
                token_budget=self._history_token_budget,
                max_prompt_tokens=self._max_prompt_tokens,
            )
            logger.debug("Turn phase → %s (%d messages)", TurnPhase.CONTEXT_BUILT.value, len(messages))

            final = await self._graph.ainvoke(
                {
                    "messages": messages,
                    "phase": TurnPhase.CONTEXT_BUILT,
                    "model_rounds": 0,
                    "tool_calls_used": 0,
                    "pending": [],
                    "final_text": "",
                    "next_step": "",
                    "direct": False,
                    "capped": False,
                },
                config={"configurable": {"turn": turn}, "recursion_limit": self._recursion_limit},
            )
            reply = final["final_text"] or EMPTY_COMPLETION_REPLY
            error = turn.provider_error.kind.value if turn.provider_error else None
            phase = TurnPhase.ERROR_PERSISTED if error else TurnPhase.PERSISTED
        except PromptTooLargeError as exc:
            logger.warning("Turn in conversation %s refused: %s", conversation.id, exc)
            reply = PROMPT_TOO_LARGE_REPLY
            error = "prompt_too_large"
            phase = TurnPhase.ERROR_PERSISTED
        except Exception:
            logger.exception("Unexpected error during turn in conversation %s", conversation.id)
            reply = GENERIC_ERROR_REPLY
            if turn.outcomes:
                reply = f"{reply}\n\n{PARTIAL_PREFIX}\n{summarize_outcomes(turn.outcomes)}"
            error = "internal_error"
            phase = TurnPhase.ERROR_PERSISTED

        agent_message = Message(
            role=MessageRole.AGENT,
            content=reply,
            metadata=collect_metadata(turn.outcomes, error=error),
        )
        actions = [outcome.to_action() for outcome in turn.outcomes]
        await self.store.append(
            conversation.id, [user_message, agent_message], actions, usage=turn.usage,
        )
        logger.info(
            "Turn %s in conversation %s: %d tool call(s), %d failed, %d model call(s), "
            "%d tokens (~$%.4f)",
            phase.value, conversation.id, len(actions),
            sum(1 for a in actions if a.status == "failure"),
            turn.usage.model_calls, turn.usage.total_tokens, turn.usage.estimated_cost_usd,
        )
        return TurnResult(
            conversation_id=conversation.id,
            messages=[user_message, agent_message],
            actions=actions,
            phase=phase,
        )


def create_procurement_agent(
    *,
    services: ProcurementServices | None = None,
    store: ConversationStore | None = None,
    gateway: ReliabilityGateway | None = None,
    registry: ToolRegistry | None = None,
) -> TurnOrchestrator:
    """Wire a ``TurnOrchestrator`` from config defaults.

    Domain services go over HTTP when ``PROCUREMENT_API_URL`` is set and
    fall back to the in-memory demo catalog otherwise.
    """
    if services is None:
        if PROCUREMENT_API_URL:
            from procurement_agent.services.procurement_client import ProcurementAPIClient

            services = ProcurementAPIClient()
        else:
            from procurement_agent.services.demo_catalog import InMemoryProcurementServices

            services = InMemoryProcurementServices()
    registry = registry or build_default_registry()
    gateway = gateway or build_gateway()
    orchestrator = TurnOrchestrator(
        gateway,
        registry,
        ToolExecutor(registry, services),
        services,
        store or InMemoryConversationStore(),
    )
    logger.debug(
        "Procurement agent ready: provider=%s, services=%s, tools=%d",
        gateway.provider.name, type(services).__name__, len(registry),
    )
    return orchestrator
