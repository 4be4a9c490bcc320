"""Closed error taxonomy shared by every layer of the engine.

Each layer reports failures with a *kind* drawn from a small ``str`` enum
rather than ad-hoc exception subclasses, so callers can switch on the kind
and the API can serialise it directly.

  - **Provider errors** come out of the reliability gateway.  Transient
    conditions are retried inside the gateway; callers only ever see
    ``ProviderUnavailableError`` (exhausted retries, quota, throttling,
    open circuit) or ``ProviderRequestError`` (auth / malformed request).
  - **Tool errors** never escape as exceptions; they are carried inside a
    ``ToolOutcome`` (see ``procurement_agent.tools.executor``).
  - **Domain errors** are raised by capability implementations (catalog,
    cart, checkout) and classified by the tool executor.
  - **Turn errors** abort a turn before any model call.
"""

from __future__ import annotations

from enum import Enum


# ── Provider ─────────────────────────────────────────────────────────


class ProviderErrorKind(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    MALFORMED_REQUEST = "malformed_request"
    SERVER_ERROR = "server_error"
    CONNECTION = "connection"
    THROTTLED = "throttled"
    CIRCUIT_OPEN = "circuit_open"


TRANSIENT_PROVIDER_ERRORS = frozenset(
    {
        ProviderErrorKind.RATE_LIMIT,
        ProviderErrorKind.TIMEOUT,
        ProviderErrorKind.SERVER_ERROR,
        ProviderErrorKind.CONNECTION,
    }
)


class ProviderError(Exception):
    """Base class for classified model-provider failures."""

    def __init__(self, kind: ProviderErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_PROVIDER_ERRORS


class ProviderRequestError(ProviderError):
    """Non-transient failure (bad credentials, malformed request).  Never retried."""


class ProviderUnavailableError(ProviderError):
    """The provider cannot serve the call right now."""


class ThrottledError(ProviderUnavailableError):
    """The local rate limiter queue is full."""

    def __init__(self, message: str = "Rate limiter queue is full"):
        super().__init__(ProviderErrorKind.THROTTLED, message)


class CircuitOpenError(ProviderUnavailableError):
    """The circuit breaker is open (or a half-open trial is already in flight)."""

    def __init__(self, message: str = "Circuit breaker is open"):
        super().__init__(ProviderErrorKind.CIRCUIT_OPEN, message)


# ── Tools ────────────────────────────────────────────────────────────


class ToolErrorKind(str, Enum):
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    AUTHENTICATION_REQUIRED = "authentication_required"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    LIMIT_EXCEEDED = "limit_exceeded"
    TIMEOUT = "timeout"
    TOOL_CALL_LIMIT = "tool_call_limit"
    UNKNOWN = "unknown"


class ToolRegistrationError(ValueError):
    """Raised when a tool definition is rejected at registration time."""


# ── Domain services ──────────────────────────────────────────────────


class DomainError(Exception):
    """Base class for errors raised by catalog / cart / checkout services.

    The message is expected to be safe to show to the end user.
    """

    kind: ToolErrorKind = ToolErrorKind.UNKNOWN


class DomainValidationError(DomainError):
    kind = ToolErrorKind.VALIDATION


class NotFoundError(DomainError):
    kind = ToolErrorKind.NOT_FOUND


class LimitExceededError(DomainError):
    kind = ToolErrorKind.LIMIT_EXCEEDED


# ── Turn ─────────────────────────────────────────────────────────────


class TurnValidationError(ValueError):
    """The inbound message was rejected before any I/O."""


class ConversationNotFoundError(LookupError):
    """No conversation exists with the requested id."""


class ConversationAccessError(PermissionError):
    """The conversation belongs to a different user."""


class PromptTooLargeError(RuntimeError):
    """The assembled prompt is over the hard token limit even after trimming history."""

    def __init__(self, total_tokens: int, limit: int):
        self.total_tokens = total_tokens
        self.limit = limit
        super().__init__(f"Prompt is ~{total_tokens} tokens; the limit is {limit}")
