"""Model catalog — lists streaming-backend models and probes which ones work.

Probing sends a tiny prompt to each model directly (no fallback), so a
caller can pick a model that is known to answer before relying on it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import httpx

from promptgate.core.config import settings
from promptgate.gateway.errors import GatewayError
from promptgate.gateway.gateway import CompletionGateway
from promptgate.gateway.normalizer import normalize_stream
from promptgate.gateway.types import BackendKind, GatewayRequest, StopReason

logger = logging.getLogger(__name__)

PROBE_PROMPT = "Say 'OK' if you can read this."


@dataclass(frozen=True)
class AvailableModel:
    name: str
    display_name: str
    description: str = ""
    supports_generate_content: bool = True
    supports_streaming: bool = False


# Returned when the listing endpoint cannot be reached
KNOWN_MODELS: tuple[AvailableModel, ...] = (
    AvailableModel("gemini-2.0-flash", "Gemini 2.0 Flash", supports_streaming=True),
    AvailableModel("gemini-2.5-flash", "Gemini 2.5 Flash", supports_streaming=True),
    AvailableModel("gemini-2.5-flash-lite", "Gemini 2.5 Flash-Lite", supports_streaming=True),
    AvailableModel("gemini-2.5-pro", "Gemini 2.5 Pro", supports_streaming=True),
    AvailableModel("gemini-3-flash-preview", "Gemini 3 Flash Preview", supports_streaming=True),
    AvailableModel("gemini-3-pro-preview", "Gemini 3 Pro Preview", supports_streaming=True),
)


async def list_models(
    api_key: str | None = None,
    api_base: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[AvailableModel]:
    """Models supporting generateContent, sorted by name.

    Falls back to KNOWN_MODELS without an API key or when the request fails.
    """
    api_key = api_key if api_key is not None else settings.gemini_api_key
    if not api_key:
        return list(KNOWN_MODELS)

    base = (api_base or settings.gemini_api_base).rstrip("/")
    timeout = httpx.Timeout(30.0, connect=settings.http_connect_timeout)
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.get(f"{base}/models", params={"key": api_key})
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Error fetching model list: %s", e.__class__.__name__)
        return list(KNOWN_MODELS)

    models: list[AvailableModel] = []
    for entry in data.get("models", []) if isinstance(data, dict) else []:
        methods = entry.get("supportedGenerationMethods") or []
        if "generateContent" not in methods:
            continue
        name = str(entry.get("name", "")).removeprefix("models/")
        models.append(
            AvailableModel(
                name=name,
                display_name=entry.get("displayName") or name,
                description=entry.get("description") or "",
                supports_generate_content=True,
                supports_streaming="streamGenerateContent" in methods,
            )
        )
    models.sort(key=lambda m: m.name)
    return models


class ModelStatus(str, Enum):
    WORKING = "working"
    FAILED = "failed"


@dataclass
class ModelProbeResult:
    model: str
    backend: BackendKind
    status: ModelStatus
    error: str = ""
    duration_ms: int = 0


@dataclass
class ModelProbeReport:
    results: list[ModelProbeResult]
    tested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def working_models(self) -> list[str]:
        return [r.model for r in self.results if r.status is ModelStatus.WORKING]

    @property
    def failed_models(self) -> list[str]:
        return [r.model for r in self.results if r.status is ModelStatus.FAILED]


class ModelProbe:
    """Probes models on one backend and remembers the last report."""

    def __init__(self, gateway: CompletionGateway, backend: BackendKind = BackendKind.GEMINI):
        self.gateway = gateway
        self.backend = backend
        self.last_report: ModelProbeReport | None = None

    async def probe(self, model: str) -> ModelProbeResult:
        adapter = self.gateway.get_adapter(self.backend)
        request = GatewayRequest(prompt=PROBE_PROMPT, backend=self.backend, model=model, streaming=False)
        try:
            response = await normalize_stream(adapter.stream(request), request)
        except GatewayError as e:
            return ModelProbeResult(model, self.backend, ModelStatus.FAILED, error=str(e))

        if response.stop_reason is StopReason.SUCCESS and response.text:
            return ModelProbeResult(model, self.backend, ModelStatus.WORKING, duration_ms=response.duration_ms)
        return ModelProbeResult(
            model,
            self.backend,
            ModelStatus.FAILED,
            error=response.error_message or "No response received",
            duration_ms=response.duration_ms,
        )

    async def probe_all(self, models: Iterable[str]) -> ModelProbeReport:
        names = list(dict.fromkeys(models))
        logger.info("Probing %d models on %s", len(names), self.backend.value)

        outcomes = await asyncio.gather(*(self.probe(m) for m in names), return_exceptions=True)
        results: list[ModelProbeResult] = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                results.append(ModelProbeResult(name, self.backend, ModelStatus.FAILED, error=str(outcome)))
            else:
                results.append(outcome)

        report = ModelProbeReport(results=results)
        self.last_report = report
        logger.info(
            "Probe complete: %d working, %d failed",
            len(report.working_models),
            len(report.failed_models),
        )
        return report

    def best_available(self, preferred: str, fallbacks: Iterable[str] = ()) -> str:
        """Preferred model if it works, else the first working fallback,
        else any working model, else the preferred model unchanged."""
        report = self.last_report
        if report is None:
            logger.warning("No probe results available, using preferred model %s", preferred)
            return preferred

        working = report.working_models
        if preferred in working:
            return preferred
        for candidate in fallbacks:
            if candidate in working:
                logger.warning("Preferred model %s failed, using %s", preferred, candidate)
                return candidate
        if working:
            logger.warning("Using first working model %s instead of %s", working[0], preferred)
            return working[0]

        logger.error("No working models found; using %s anyway", preferred)
        return preferred
