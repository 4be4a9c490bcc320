"""Procurement Agent — a conversational procurement assistant.

Architecture Overview
=====================

A user exchanges natural-language messages with an agent that can search
the catalog, change their cart and submit purchase requests.  Each turn
runs through a **LangGraph** state machine (see ``agent.py``):

1. **call_model** — sends the system prompt, a bounded window of history
   and the live cart snapshot to Claude through the reliability gateway.
2. **execute_tools** — runs the tool calls the model asked for, in order,
   against the procurement services.
3. **compose_reply** — renders read-only results directly, or uses the
   model's follow-up text for mutating actions.

Key Design Decisions
--------------------
- **Reliability gateway**: every model call passes a token-bucket rate
  limiter, a failure-ratio circuit breaker and a retry loop with
  exponential backoff and jitter.  They are injected, one per provider.
- **Tool registry**: each tool is a pydantic argument model plus an async
  handler; bad arguments never reach the services.
- **Capability interface**: the executor depends on ``ProcurementServices``
  only.  The HTTP client talks to the procurement backend; the in-memory
  demo catalog serves the CLI and the tests.
- **Errors**: closed ``str`` enums of provider and tool error kinds; users
  only ever see texts from ``replies.py``.
- **Memory**: conversations are append-only logs in a ``ConversationStore``;
  the prompt only sees the most recent ``HISTORY_WINDOW`` messages.

Package Structure
-----------------
- ``procurement_agent/agent.py`` — turn graph and ``TurnOrchestrator``
- ``procurement_agent/config.py`` — configuration from env / SSM
- ``procurement_agent/errors.py`` — error taxonomy
- ``procurement_agent/llm.py`` — model provider adapter
- ``procurement_agent/models.py`` — conversation and domain models
- ``procurement_agent/prompts.py`` — system prompt and context builder
- ``procurement_agent/replies.py`` — user-facing texts and metadata
- ``procurement_agent/server.py`` — FastAPI application
- ``procurement_agent/main.py`` — CLI chat interface
- ``procurement_agent/services/`` — gateway, stores, procurement clients, metrics
- ``procurement_agent/tools/`` — tool registry and executor
- ``procurement_agent/api/`` — FastAPI routes and Pydantic schemas
"""
