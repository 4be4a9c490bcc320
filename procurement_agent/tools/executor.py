"""Tool executor: runs one model-issued tool call and normalises the result.

``ToolExecutor.execute`` never raises.  Whatever happens (unknown tool,
bad arguments, anonymous caller, domain error, timeout, or a bug in a
handler) it returns a ``ToolOutcome``, and the domain service is only
reached once the name, the arguments and the caller have all been
checked.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from procurement_agent.config import TOOL_TIMEOUT_SECONDS
from procurement_agent.errors import DomainError, ToolErrorKind
from procurement_agent.llm import ToolCall
from procurement_agent.models import AgentAction
from procurement_agent.services.domain import ProcurementServices
from procurement_agent.services.metrics import MetricsClient
from procurement_agent.services.metrics import metrics as default_metrics
from procurement_agent.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class ToolFailure:
    kind: ToolErrorKind
    message: str


@dataclass(frozen=True)
class ToolOutcome:
    """Result of one tool call: a success ``value`` or a ``failure``."""

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    value: Any = None
    failure: ToolFailure | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def failed(cls, call: ToolCall, kind: ToolErrorKind, message: str, duration_ms: float = 0.0) -> ToolOutcome:
        return cls(
            call_id=call.id,
            tool_name=call.name,
            arguments=dict(call.arguments),
            failure=ToolFailure(kind, message),
            duration_ms=duration_ms,
        )

    def to_payload(self) -> str:
        """JSON body of the ``ToolMessage`` sent back to the model."""
        if self.ok:
            body = {"ok": True, "result": to_jsonable(self.value)}
        else:
            body = {"ok": False, "error": {"kind": self.failure.kind.value, "message": self.failure.message}}
        return json.dumps(body, default=str)

    def to_action(self) -> AgentAction:
        return AgentAction(
            tool_call_id=self.call_id,
            tool_name=self.tool_name,
            arguments=to_jsonable(self.arguments),
            status="success" if self.ok else "failure",
            result=to_jsonable(self.value) if self.ok else None,
            error_kind=None if self.ok else self.failure.kind.value,
            error_message=None if self.ok else self.failure.message,
            duration_ms=round(self.duration_ms, 1),
        )


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"]) or "arguments"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


class ToolExecutor:
    """Stateless dispatcher from ``ToolCall`` to the registered handler."""

    def __init__(
        self,
        registry: ToolRegistry,
        services: ProcurementServices,
        *,
        timeout: float = TOOL_TIMEOUT_SECONDS,
        metrics: MetricsClient | None = None,
    ) -> None:
        self.registry = registry
        self.services = services
        self._timeout = timeout
        self._metrics = metrics or default_metrics

    async def execute(self, call: ToolCall, *, user_id: str | None) -> ToolOutcome:
        spec = self.registry.get(call.name)
        if spec is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return ToolOutcome.failed(call, ToolErrorKind.UNKNOWN_TOOL, f"Unknown tool: {call.name}")

        try:
            args = spec.args_model.model_validate(call.arguments)
        except ValidationError as exc:
            message = _summarize_validation_error(exc)
            logger.warning("Invalid arguments for %s: %s", call.name, message)
            return ToolOutcome.failed(call, ToolErrorKind.INVALID_ARGUMENTS, message)

        if spec.needs_user and not user_id:
            logger.warning("Refused %s for an unauthenticated caller", call.name)
            return ToolOutcome.failed(
                call, ToolErrorKind.AUTHENTICATION_REQUIRED, "You need to be signed in to do that.",
            )

        t0 = time.perf_counter()
        try:
            value = await asyncio.wait_for(
                spec.handler(self.services, args, user_id), timeout=self._timeout,
            )
        except DomainError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure("tools", call.name, error_type=exc.kind.value, latency_ms=elapsed)
            logger.warning("Tool %s failed (%s): %s", call.name, exc.kind.value, exc)
            return ToolOutcome.failed(call, exc.kind, str(exc), duration_ms=elapsed)
        except asyncio.TimeoutError:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure("tools", call.name, error_type="timeout", latency_ms=elapsed)
            logger.warning("Tool %s timed out after %.1fs", call.name, self._timeout)
            return ToolOutcome.failed(
                call, ToolErrorKind.TIMEOUT, "The operation took too long and was cancelled.",
                duration_ms=elapsed,
            )
        except Exception:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure("tools", call.name, error_type="unknown", latency_ms=elapsed)
            logger.exception("Tool %s raised an unexpected error", call.name)
            return ToolOutcome.failed(
                call, ToolErrorKind.UNKNOWN, "An unexpected error occurred while running this action.",
                duration_ms=elapsed,
            )

        elapsed = (time.perf_counter() - t0) * 1000
        self._metrics.record_success("tools", call.name, latency_ms=elapsed)
        logger.info("Tool %s succeeded in %.0fms", call.name, elapsed)
        return ToolOutcome(
            call_id=call.id,
            tool_name=call.name,
            arguments=args.model_dump(by_alias=True, exclude_none=True),
            value=value,
            duration_ms=elapsed,
        )
