"""FastAPI route definitions for the procurement agent API."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from procurement_agent.agent import TurnOrchestrator, TurnRequest
from procurement_agent.api.schemas import (
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    ConversationResponse,
    HealthResponse,
)
from procurement_agent.errors import (
    ConversationAccessError,
    ConversationNotFoundError,
    TurnValidationError,
)
from procurement_agent.models import ConversationSummary

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_agent(request: Request) -> TurnOrchestrator:
    """Retrieve the turn orchestrator from app state.

    The orchestrator is wired once during the FastAPI lifespan (see
    ``server.py``).
    """
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return agent


def get_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Caller identity from the ``X-User-ID`` header set by the auth proxy."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint, including the provider circuit state."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        return HealthResponse(status="starting")
    return HealthResponse(circuit_state=agent.gateway.circuit_breaker.state.value)


@router.post("/chat", response_model=ChatResponse, response_model_by_alias=False)
async def chat(
    request: ChatRequest,
    http_request: Request,
    user_id: str | None = Depends(get_user_id),
):
    """Send a message to the procurement agent.

    Omitting ``conversation_id`` starts a new conversation; the returned
    id is stable for the following turns.
    """
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        result = await agent.handle_turn(
            TurnRequest(
                user_id=user_id,
                message=request.message,
                conversation_id=request.conversation_id,
            )
        )
    except TurnValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except ConversationAccessError as e:
        logger.warning("[%s] Conversation access denied for user %s", request_id, user_id)
        raise HTTPException(
            status_code=403, detail="You do not have access to this conversation.",
        ) from e
    except Exception as e:
        # Full traceback stays in the server log; the client gets a generic message.
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    logger.info(
        "[%s] Turn %s for conversation %s", request_id, result.phase.value, result.conversation_id,
    )
    return ChatResponse(conversation_id=result.conversation_id, messages=result.messages)


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    http_request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    user_id: str | None = Depends(get_user_id),
):
    """The caller's conversations, most recently updated first."""
    if user_id is None:
        raise HTTPException(status_code=401, detail="Sign in to see your conversations.")
    agent = _get_agent(http_request)
    conversations = await agent.store.list_for_user(user_id, limit=limit)
    return ConversationListResponse(
        conversations=[ConversationSummary.from_conversation(c) for c in conversations],
    )


@router.get(
    "/conversations/{conversation_id}", response_model=ConversationResponse, response_model_by_alias=False,
)
async def get_conversation(
    conversation_id: str,
    http_request: Request,
    user_id: str | None = Depends(get_user_id),
):
    """Full message and action history of one conversation."""
    agent = _get_agent(http_request)
    try:
        conversation = await agent.store.get(conversation_id, user_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except ConversationAccessError as e:
        raise HTTPException(
            status_code=403, detail="You do not have access to this conversation.",
        ) from e
    return ConversationResponse(
        id=conversation.id,
        title=conversation.title,
        status=conversation.status,
        messages=conversation.messages,
        actions=conversation.actions,
        usage=conversation.usage,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )
