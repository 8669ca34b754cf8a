"""Completion Gateway — single entry point for submitting prompts.

Main entry point for dispatching prompts to completion backends:
  1. Validates caller options into a GatewayRequest
  2. Selects the Backend Adapter for the requested backend
  3. Runs the attempt through the Fallback Policy Engine
  4. Resolves each attempt's events with the Response Normalizer
  5. Forwards prompt + response to the memory collaborator (best-effort)

Usage:
    gateway = CompletionGateway()

    token = CancellationToken()
    response = await gateway.submit(
        "2+2",
        {"backend": "cursor", "model": "sonnet-4.5", "streaming": True},
        cancel_token=token,
        on_chunk=lambda text: print(text, end=""),
    )
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Protocol

from promptgate.core.logging import log_extra
from promptgate.core.metrics import SUBMISSION_DURATION, SUBMISSION_FAILURES, SUBMISSIONS
from promptgate.gateway.backend_adapters import BaseBackendAdapter, get_adapter
from promptgate.gateway.cancellation import CancellationToken
from promptgate.gateway.credentials import CredentialManager
from promptgate.gateway.errors import CredentialUnavailable, TerminalBackendFailure
from promptgate.gateway.fallback import FallbackPolicy
from promptgate.gateway.normalizer import ChunkCallback, normalize_stream
from promptgate.gateway.types import BackendKind, GatewayRequest, GatewayResponse, StopReason
from promptgate.schemas.options import GatewayOptions

logger = logging.getLogger(__name__)


class MemorySink(Protocol):
    """External store that keeps prompt/response pairs for a session."""

    async def save_prompt_response(self, session_id: str, prompt: str, response: str) -> None: ...


class CompletionGateway:
    """Main gateway orchestrator.

    Integrates:
      - CredentialManager: bearer tokens for the streaming backend
      - Backend Adapters: process and streaming-HTTP transports
      - FallbackPolicy: classify-then-fallback across model candidates
      - Normalizer: event sequence → GatewayResponse
    """

    def __init__(
        self,
        credentials: CredentialManager | None = None,
        adapters: dict[BackendKind, BaseBackendAdapter] | None = None,
        policy: FallbackPolicy | None = None,
        memory_sink: MemorySink | None = None,
        adapter_kwargs: dict[BackendKind, dict[str, Any]] | None = None,
    ):
        """
        Args:
            credentials: Shared credential cache (created if omitted)
            adapters: Pre-built adapters per backend; others are created lazily
            policy: Fallback policy (built from settings if omitted)
            memory_sink: Optional prompt/response store
            adapter_kwargs: Extra kwargs per backend (e.g. api_key, transport for Gemini)
        """
        self.credentials = credentials or CredentialManager()
        self.policy = policy or FallbackPolicy()
        self.memory_sink = memory_sink
        self._adapters: dict[BackendKind, BaseBackendAdapter] = dict(adapters or {})
        self._adapter_kwargs = adapter_kwargs or {}

    def get_adapter(self, backend: BackendKind) -> BaseBackendAdapter:
        """Get or create the adapter for a backend."""
        if backend not in self._adapters:
            kwargs = dict(self._adapter_kwargs.get(backend, {}))
            if backend is BackendKind.GEMINI:
                kwargs.setdefault("credentials", self.credentials)
            self._adapters[backend] = get_adapter(backend, **kwargs)
        return self._adapters[backend]

    async def submit(
        self,
        prompt: str,
        options: GatewayOptions | dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> GatewayResponse:
        """Validate ``options`` and execute the prompt.

        Raises pydantic.ValidationError for invalid options,
        CredentialUnavailable when no credential path exists, and
        TerminalBackendFailure (incl. FallbackExhaustedError) when the
        backend cannot serve the request.
        """
        if not isinstance(options, GatewayOptions):
            options = GatewayOptions.model_validate(options or {})
        return await self.execute(options.to_request(prompt, cancel_token), on_chunk)

    async def execute(
        self,
        request: GatewayRequest,
        on_chunk: ChunkCallback | None = None,
    ) -> GatewayResponse:
        """Execute a single request through the full gateway pipeline."""
        adapter = self.get_adapter(request.backend)
        if not request.model:
            request = replace(request, model=adapter.default_model)

        backend = request.backend.value
        start = time.monotonic()
        logger.info(
            "Submitting request %s to %s (model=%s, streaming=%s)",
            request.request_id,
            backend,
            request.model,
            request.streaming,
            extra=log_extra(request),
        )

        async def attempt(attempt_request: GatewayRequest) -> GatewayResponse:
            return await normalize_stream(adapter.stream(attempt_request), attempt_request, on_chunk)

        try:
            response = await self.policy.run(request, attempt, adapter.config.signatures)
        except (TerminalBackendFailure, CredentialUnavailable) as e:
            SUBMISSION_FAILURES.labels(backend=backend, error=type(e).__name__).inc()
            logger.error("Request %s to %s failed: %s", request.request_id, backend, e, extra=log_extra(request))
            raise
        finally:
            SUBMISSION_DURATION.labels(backend=backend).observe(time.monotonic() - start)

        response.duration_ms = int((time.monotonic() - start) * 1000)
        SUBMISSIONS.labels(backend=backend, stop_reason=response.stop_reason.value).inc()
        logger.info(
            "Request %s finished: %s in %dms (model=%s)",
            request.request_id,
            response.stop_reason.value,
            response.duration_ms,
            response.model_used,
            extra=log_extra(request, stop_reason=response.stop_reason.value),
        )

        await self._remember(request, response)
        return response

    async def _remember(self, request: GatewayRequest, response: GatewayResponse) -> None:
        """Best-effort forward to the memory collaborator; never fails the request."""
        if self.memory_sink is None or not request.memory_session_id:
            return
        if response.stop_reason is not StopReason.SUCCESS or not response.text:
            return
        try:
            await self.memory_sink.save_prompt_response(request.memory_session_id, request.prompt, response.text)
        except Exception as e:
            logger.warning(
                "Failed to save prompt/response to memory for %s: %s",
                request.memory_session_id,
                e,
                extra=log_extra(request),
            )

    async def get_status(self) -> dict:
        """Get gateway status: backend availability and credential state."""
        backends = {}
        for kind in BackendKind:
            adapter = self.get_adapter(kind)
            backends[kind.value] = {
                "available": await adapter.is_available(),
                "default_model": adapter.default_model,
                "signatures": adapter.config.signatures.version,
            }
        return {
            "backends": backends,
            "credentials": {
                "helper": self.credentials.helper_executable,
                "cached_token": self.credentials.has_cached_token,
            },
            "fallback_chains": len(self.policy.table),
        }
