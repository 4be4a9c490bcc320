"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from procurement_agent.models import AgentAction, ConversationSummary, Message, UsageTotals


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend.

    Emptiness and length are checked by the orchestrator after trimming,
    so the user-facing wording is the same on every surface.
    """

    message: str = Field(..., description="The user's message")
    conversation_id: str | None = Field(
        default=None,
        min_length=1,
        max_length=100,
        description="Existing conversation to continue; omit to start a new one",
    )


class ChatResponse(BaseModel):
    """The newly appended user and agent messages."""

    conversation_id: str = Field(..., description="Stable id to send with the next turn")
    messages: list[Message]


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]


class ConversationResponse(BaseModel):
    id: str
    title: str
    status: str
    messages: list[Message]
    actions: list[AgentAction]
    usage: UsageTotals
    created_at: datetime
    updated_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "procurement-agent"
    circuit_state: str | None = None
