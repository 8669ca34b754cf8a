"""Fallback Policy Engine — classify-then-fallback across model candidates.

Per-request state machine:
  NOT_STARTED → RETRYING(attempt, candidate) → ... → SUCCEEDED | CANCELLED
                                                    ├→ FAILED (terminal failure or in-band error)
                                                    └→ EXHAUSTED

  - A pure classifier maps each failure to TRANSIENT or TERMINAL using the
    backend's versioned FailureSignatures
  - Only TRANSIENT failures advance to the next candidate
  - Candidates come from a static chain keyed by the requested model; every
    entry is the same or a newer generation (checked when the table loads)
  - Attempts are strictly sequential; cancellation stops the walk
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum

from promptgate.core.config import settings
from promptgate.core.logging import log_extra
from promptgate.core.metrics import FALLBACK_SUBSTITUTIONS
from promptgate.gateway.errors import (
    BackendFailure,
    FallbackExhaustedError,
    TerminalBackendFailure,
    TransientBackendFailure,
)
from promptgate.gateway.types import (
    FailureClass,
    FailureSignatures,
    GatewayRequest,
    GatewayResponse,
    StopReason,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Static tables
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class ModelGeneration:
    family: str
    version: tuple[int, ...]


MODEL_GENERATIONS: dict[str, ModelGeneration] = {
    # Gemini
    "gemini-2.0-flash": ModelGeneration("gemini", (2, 0)),
    "gemini-2.5-flash-lite": ModelGeneration("gemini", (2, 5)),
    "gemini-2.5-flash": ModelGeneration("gemini", (2, 5)),
    "gemini-2.5-pro": ModelGeneration("gemini", (2, 5)),
    "gemini-3-flash-preview": ModelGeneration("gemini", (3, 0)),
    "gemini-3-pro-preview": ModelGeneration("gemini", (3, 0)),
    # cursor agent model names
    "sonnet-4.5": ModelGeneration("anthropic", (4, 5)),
    "sonnet-4.5-thinking": ModelGeneration("anthropic", (4, 5)),
    "opus-4.1": ModelGeneration("anthropic", (4, 1)),
    "opus-4.5": ModelGeneration("anthropic", (4, 5)),
    "gpt-5": ModelGeneration("openai", (5, 0)),
    "gpt-5-codex": ModelGeneration("openai", (5, 0)),
    # claude CLI model ids
    "claude-opus-4-1-20250805": ModelGeneration("anthropic", (4, 1)),
    "claude-haiku-4-5-20251001": ModelGeneration("anthropic", (4, 5)),
    "claude-sonnet-4-5-20250929": ModelGeneration("anthropic", (4, 5)),
    "claude-opus-4-5-20251101": ModelGeneration("anthropic", (4, 5)),
}

# Requested model → ordered candidates, requested model first
DEFAULT_FALLBACK_CHAINS: dict[str, tuple[str, ...]] = {
    "gemini-2.0-flash": ("gemini-2.0-flash", "gemini-2.5-flash", "gemini-3-flash-preview"),
    "gemini-2.5-flash-lite": ("gemini-2.5-flash-lite", "gemini-2.5-flash", "gemini-3-flash-preview"),
    "gemini-2.5-flash": ("gemini-2.5-flash", "gemini-2.5-pro", "gemini-3-flash-preview"),
    "gemini-2.5-pro": ("gemini-2.5-pro", "gemini-3-pro-preview"),
    "gemini-3-flash-preview": ("gemini-3-flash-preview", "gemini-3-pro-preview"),
    "gemini-3-pro-preview": ("gemini-3-pro-preview", "gemini-3-flash-preview"),
    "sonnet-4.5": ("sonnet-4.5", "sonnet-4.5-thinking", "opus-4.5"),
    "opus-4.1": ("opus-4.1", "opus-4.5", "sonnet-4.5"),
    "gpt-5": ("gpt-5", "gpt-5-codex"),
    "claude-opus-4-1-20250805": ("claude-opus-4-1-20250805", "claude-opus-4-5-20251101", "claude-sonnet-4-5-20250929"),
    "claude-haiku-4-5-20251001": ("claude-haiku-4-5-20251001", "claude-sonnet-4-5-20250929"),
    "claude-sonnet-4-5-20250929": ("claude-sonnet-4-5-20250929", "claude-opus-4-5-20251101"),
}


def build_fallback_table(
    overrides: Mapping[str, Sequence[str]] | None = None,
    generations: Mapping[str, ModelGeneration] | None = None,
    defaults: Mapping[str, Sequence[str]] | None = None,
) -> dict[str, tuple[str, ...]]:
    """Merge overrides over the defaults and validate every chain.

    Raises ValueError when a chain names a model of unknown generation, a
    different family, or an older generation than the requested model.
    """
    generations = MODEL_GENERATIONS if generations is None else generations
    merged = dict(DEFAULT_FALLBACK_CHAINS if defaults is None else defaults)
    merged.update(overrides or {})

    table: dict[str, tuple[str, ...]] = {}
    for requested, candidates in merged.items():
        base = generations.get(requested)
        if base is None:
            raise ValueError(f"no generation known for model '{requested}'")

        chain: list[str] = [requested]
        for candidate in candidates:
            if candidate in chain:
                continue
            gen = generations.get(candidate)
            if gen is None:
                raise ValueError(f"no generation known for fallback '{candidate}' of '{requested}'")
            if gen.family != base.family:
                raise ValueError(f"fallback '{candidate}' ({gen.family}) crosses family of '{requested}' ({base.family})")
            if gen.version < base.version:
                raise ValueError(f"fallback '{candidate}' is an older generation than '{requested}'")
            chain.append(candidate)
        table[requested] = tuple(chain)

    return table


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


def classify_message(text: str, signatures: FailureSignatures) -> FailureClass:
    """Terminal patterns win over transient ones; unmatched is terminal."""
    lowered = text.lower()
    if any(pattern in lowered for pattern in signatures.terminal_patterns):
        return FailureClass.TERMINAL
    if any(pattern in lowered for pattern in signatures.transient_patterns):
        return FailureClass.TRANSIENT
    return FailureClass.TERMINAL


def classify_failure(failure: BackendFailure, signatures: FailureSignatures) -> FailureClass:
    """Map a backend failure to TRANSIENT or TERMINAL. Pure."""
    if isinstance(failure, TerminalBackendFailure):
        return FailureClass.TERMINAL
    if isinstance(failure, TransientBackendFailure):
        return FailureClass.TRANSIENT

    if failure.status_code is not None:
        if failure.status_code in signatures.transient_status_codes:
            return FailureClass.TRANSIENT
        if failure.status_code in signatures.terminal_status_codes:
            return FailureClass.TERMINAL

    if failure.exit_code is not None and failure.exit_code in signatures.transient_exit_codes:
        return FailureClass.TRANSIENT

    return classify_message(failure.signature_text, signatures)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class PolicyState(str, Enum):
    NOT_STARTED = "not_started"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


_FINAL_STATES = {
    StopReason.SUCCESS: PolicyState.SUCCEEDED,
    StopReason.CANCELLED: PolicyState.CANCELLED,
    StopReason.ERROR: PolicyState.FAILED,
}


@dataclass
class FallbackRun:
    """Progress of one request through its fallback chain."""

    request_id: str
    chain: tuple[str, ...]
    state: PolicyState = PolicyState.NOT_STARTED
    attempt: int = 0
    candidate: str | None = None
    attempted: list[str] = field(default_factory=list)
    substitutions: list[tuple[str, str]] = field(default_factory=list)

    def transition(self, state: PolicyState) -> None:
        logger.debug(
            "Request %s: %s → %s", self.request_id, self.state.value, state.value, extra={"request_id": self.request_id}
        )
        self.state = state

    def finish(self, response: GatewayResponse) -> GatewayResponse:
        """Enter the final state for ``response`` and stamp the chain's history on it."""
        self.transition(_FINAL_STATES[response.stop_reason])
        response.model_used = response.model_used or self.candidate or ""
        response.substitutions = list(self.substitutions)
        response.attempted_models = list(self.attempted)
        return response


AttemptFn = Callable[[GatewayRequest], Awaitable[GatewayResponse]]


class FallbackPolicy:
    """Walks the fallback chain for a request, one attempt at a time."""

    def __init__(self, table: Mapping[str, tuple[str, ...]] | None = None):
        self.table = dict(table) if table is not None else build_fallback_table(settings.fallback_chains)

    def chain_for(self, model: str) -> tuple[str, ...]:
        return self.table.get(model, (model,))

    async def run(
        self,
        request: GatewayRequest,
        attempt: AttemptFn,
        signatures: FailureSignatures,
    ) -> GatewayResponse:
        """Run ``attempt`` against each candidate until one is not transient.

        Returns the first non-transient Response (success, cancelled or
        in-band error). Raises TerminalBackendFailure on a terminal failure
        and FallbackExhaustedError when every candidate failed transiently.
        """
        run = FallbackRun(request_id=request.request_id, chain=self.chain_for(request.model))
        start = time.monotonic()
        last_failure: BackendFailure | None = None
        previous: str | None = None

        for candidate in run.chain:
            if candidate in run.attempted:
                continue

            if request.cancel_token.cancelled:
                logger.info(
                    "Request %s cancelled between fallback attempts", request.request_id, extra=log_extra(request)
                )
                return run.finish(
                    GatewayResponse(
                        duration_ms=int((time.monotonic() - start) * 1000),
                        model_used=previous or request.model,
                        stop_reason=StopReason.CANCELLED,
                        request_id=request.request_id,
                        backend=request.backend,
                        error_message=request.cancel_token.reason,
                    )
                )

            if previous is not None:
                run.substitutions.append((previous, candidate))
                FALLBACK_SUBSTITUTIONS.labels(
                    backend=request.backend.value, from_model=previous, to_model=candidate
                ).inc()
                logger.info(
                    "Falling back %s → %s for request %s",
                    previous,
                    candidate,
                    request.request_id,
                    extra=log_extra(request, attempt=run.attempt + 1),
                )

            run.transition(PolicyState.RETRYING)
            run.attempt += 1
            run.candidate = candidate
            run.attempted.append(candidate)

            attempt_request = replace(request, model=candidate)
            try:
                response = await attempt(attempt_request)
            except BackendFailure as failure:
                failure_class = classify_failure(failure, signatures)
                logger.warning(
                    "Attempt %d for request %s on %s failed (%s, signatures %s): %s",
                    run.attempt,
                    request.request_id,
                    candidate,
                    failure_class.value,
                    signatures.version,
                    failure.message,
                    extra=log_extra(
                        attempt_request,
                        attempt=run.attempt,
                        exit_code=failure.exit_code,
                        status_code=failure.status_code,
                    ),
                )
                if failure_class is FailureClass.TERMINAL:
                    run.transition(PolicyState.FAILED)
                    raise TerminalBackendFailure.from_failure(failure, list(run.attempted)) from failure
                last_failure = failure
                previous = candidate
                continue

            if (
                response.stop_reason is StopReason.ERROR
                and classify_message(response.error_message, signatures) is FailureClass.TRANSIENT
            ):
                logger.warning(
                    "Attempt %d for request %s on %s reported a transient error: %s",
                    run.attempt,
                    request.request_id,
                    candidate,
                    response.error_message,
                    extra=log_extra(attempt_request, attempt=run.attempt),
                )
                last_failure = BackendFailure(
                    response.error_message,
                    backend=request.backend.value,
                    model=candidate,
                    duration_ms=response.duration_ms,
                )
                previous = candidate
                continue

            return run.finish(response)

        run.transition(PolicyState.EXHAUSTED)
        if last_failure is None:
            last_failure = BackendFailure("no fallback candidates", backend=request.backend.value, model=request.model)
        logger.error(
            "Fallback chain exhausted for request %s (attempted: %s)",
            request.request_id,
            ", ".join(run.attempted),
            extra=log_extra(request),
        )
        raise FallbackExhaustedError.from_failure(last_failure, list(run.attempted)) from last_failure
