"""Core types and DTOs for the completion gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union

from promptgate.core.config import settings
from promptgate.gateway.cancellation import CancellationToken


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class BackendKind(str, Enum):
    """Supported completion backends."""

    CURSOR = "cursor"  # cursor agent CLI, spawned process
    CLAUDE = "claude"  # primary CLI, spawned process
    GEMINI = "gemini"  # Generative Language API, streaming HTTP


class StopReason(str, Enum):
    """Why a response ended. Always set on a terminal response."""

    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"


class OutputMode(str, Enum):
    """Process output format, as passed to the CLI's output-format flag."""

    PLAIN = "text"
    JSON = "json"  # single aggregate object at exit
    STREAM_JSON = "stream-json"  # newline-delimited events + partial output


class SandboxMode(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class FailureClass(str, Enum):
    """Outcome of the failure classifier."""

    TRANSIENT = "transient"  # rate limit, temporarily unavailable, unreachable
    TERMINAL = "terminal"  # bad arguments, auth failure, malformed request


# ---------------------------------------------------------------------------
# Gateway Request: input to the gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayRequest:
    """A single prompt submitted to a completion backend.

    Immutable once submitted; fallback attempts derive copies with
    ``dataclasses.replace`` instead of mutating the original.
    """

    prompt: str = ""
    backend: BackendKind = BackendKind.CURSOR
    model: str = ""  # empty → backend default
    workspace_dir: str = ""
    streaming: bool = False
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    resume_session_id: str = ""
    force_approve: bool = False
    sandbox_mode: SandboxMode | None = None
    output_mode: OutputMode | None = None  # None → derived from ``streaming``
    memory_session_id: str = ""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])

    @property
    def effective_output_mode(self) -> OutputMode:
        if self.output_mode is not None:
            return self.output_mode
        return OutputMode.STREAM_JSON if self.streaming else OutputMode.JSON


# ---------------------------------------------------------------------------
# Gateway Response: unified DTO (output of the gateway)
# ---------------------------------------------------------------------------


@dataclass
class GatewayResponse:
    """Unified response from any backend.

    Same structure regardless of which backend produced it, and fully
    populated on every path, including cancellation and in-band errors.
    """

    text: str = ""
    duration_ms: int = 0
    model_used: str = ""
    stop_reason: StopReason = StopReason.SUCCESS
    session_id: str | None = None
    cost_estimate: float | None = None

    request_id: str = ""
    backend: BackendKind = BackendKind.CURSOR
    error_message: str = ""

    # Fallback observability
    substitutions: list[tuple[str, str]] = field(default_factory=list)
    attempted_models: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for callers and logs."""
        return {
            "request_id": self.request_id,
            "backend": self.backend.value,
            "text": self.text,
            "duration_ms": self.duration_ms,
            "model_used": self.model_used,
            "session_id": self.session_id,
            "cost_estimate": self.cost_estimate,
            "stop_reason": self.stop_reason.value,
            "error_message": self.error_message,
            "substitutions": [list(pair) for pair in self.substitutions],
            "attempted_models": list(self.attempted_models),
        }


# ---------------------------------------------------------------------------
# Stream events: adapter-facing internal contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class Metadata:
    session_id: str | None = None
    cost_estimate: float | None = None
    model: str | None = None


@dataclass(frozen=True)
class Done:
    final_text: str | None = None  # overrides accumulated deltas when set


@dataclass(frozen=True)
class Error:
    info: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Cancelled:
    reason: str = ""


StreamEvent = Union[TextDelta, Metadata, Done, Error, Cancelled]


# ---------------------------------------------------------------------------
# Backend config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FailureSignatures:
    """Versioned trigger signatures used by the failure classifier.

    Signatures drift with backend releases, so each set carries the
    version it was captured against.
    """

    version: str
    transient_patterns: tuple[str, ...] = ()
    terminal_patterns: tuple[str, ...] = ()
    transient_status_codes: frozenset[int] = frozenset()
    terminal_status_codes: frozenset[int] = frozenset()
    transient_exit_codes: frozenset[int] = frozenset()


_CLI_SIGNATURES = FailureSignatures(
    version="cli-2025.10",
    transient_patterns=(
        "rate limit",
        "rate_limit",
        "ratelimit",
        "too many requests",
        "usage limit",
        "overloaded",
        "temporarily unavailable",
        "service unavailable",
        "try again later",
        "econnrefused",
        "econnreset",
        "enotfound",
        "etimedout",
        "network error",
        "connection refused",
    ),
    terminal_patterns=(
        "unknown option",
        "unknown argument",
        "invalid model",
        "not logged in",
        "unauthorized",
        "authentication",
        "invalid api key",
        "permission denied",
        "malformed",
    ),
)

_GEMINI_SIGNATURES = FailureSignatures(
    version="generativelanguage-v1beta-2025.10",
    transient_patterns=(
        "resource_exhausted",
        "unavailable",
        "overloaded",
        "rate limit",
        "quota",
        "deadline_exceeded",
    ),
    terminal_patterns=(
        "invalid_argument",
        "unauthenticated",
        "permission_denied",
        "not_found",
        "failed_precondition",
    ),
    transient_status_codes=frozenset({408, 429, 500, 502, 503, 504}),
    terminal_status_codes=frozenset({400, 401, 403, 404}),
)


@dataclass(frozen=True)
class BackendConfig:
    """Static configuration for a backend."""

    backend: BackendKind
    default_model: str
    signatures: FailureSignatures


DEFAULT_BACKEND_CONFIGS: dict[BackendKind, BackendConfig] = {
    BackendKind.CURSOR: BackendConfig(
        backend=BackendKind.CURSOR,
        default_model="sonnet-4.5",
        signatures=_CLI_SIGNATURES,
    ),
    BackendKind.CLAUDE: BackendConfig(
        backend=BackendKind.CLAUDE,
        default_model="claude-sonnet-4-5-20250929",
        signatures=_CLI_SIGNATURES,
    ),
    BackendKind.GEMINI: BackendConfig(
        backend=BackendKind.GEMINI,
        default_model="gemini-3-flash-preview",
        signatures=_GEMINI_SIGNATURES,
    ),
}


def backend_config(backend: BackendKind) -> BackendConfig:
    """Built-in config for ``backend`` with its default model from settings."""
    configured = {
        BackendKind.CURSOR: settings.cursor_default_model,
        BackendKind.CLAUDE: settings.claude_default_model,
        BackendKind.GEMINI: settings.gemini_default_model,
    }[backend]
    base = DEFAULT_BACKEND_CONFIGS[backend]
    return replace(base, default_model=configured or base.default_model)
