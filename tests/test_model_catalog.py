"""Tests for model listing and probing."""

from __future__ import annotations

import httpx
import pytest

from promptgate.gateway.backend_adapters import BaseBackendAdapter
from promptgate.gateway.credentials import CommandResult, CredentialManager
from promptgate.gateway.errors import BackendFailure
from promptgate.gateway.fallback import FallbackPolicy
from promptgate.gateway.gateway import CompletionGateway
from promptgate.gateway.model_catalog import (
    KNOWN_MODELS,
    ModelProbe,
    ModelProbeReport,
    ModelProbeResult,
    ModelStatus,
    list_models,
)
from promptgate.gateway.types import BackendKind, Done, Error


class _ProbeAdapter(BaseBackendAdapter):
    backend = BackendKind.GEMINI

    def __init__(self, outcomes):
        super().__init__()
        self.outcomes = outcomes

    async def stream(self, request):
        assert request.streaming is False
        outcome = self.outcomes[request.model]
        if isinstance(outcome, Exception):
            raise outcome
        for event in outcome:
            yield event

    async def is_available(self):
        return True


async def _no_helper(args, cancel_token=None):
    return CommandResult(1, "")


def _probe(outcomes) -> ModelProbe:
    gateway = CompletionGateway(
        credentials=CredentialManager(runner=_no_helper),
        adapters={BackendKind.GEMINI: _ProbeAdapter(outcomes)},
        policy=FallbackPolicy(table={}),
    )
    return ModelProbe(gateway)


class TestListModels:
    @pytest.mark.asyncio
    async def test_filters_and_sorts(self):
        def handler(request):
            assert request.url.path == "/v1beta/models"
            assert request.url.params["key"] == "k"
            return httpx.Response(
                200,
                json={
                    "models": [
                        {
                            "name": "models/gemini-2.5-pro",
                            "displayName": "Gemini 2.5 Pro",
                            "supportedGenerationMethods": ["generateContent", "streamGenerateContent"],
                        },
                        {"name": "models/embedding-001", "supportedGenerationMethods": ["embedContent"]},
                        {"name": "models/gemini-2.0-flash", "supportedGenerationMethods": ["generateContent"]},
                    ]
                },
            )

        models = await list_models(
            api_key="k",
            api_base="https://generativelanguage.example/v1beta",
            transport=httpx.MockTransport(handler),
        )

        assert [m.name for m in models] == ["gemini-2.0-flash", "gemini-2.5-pro"]
        assert models[0].display_name == "gemini-2.0-flash"
        assert models[0].supports_streaming is False
        assert models[1].display_name == "Gemini 2.5 Pro"
        assert models[1].supports_streaming is True

    @pytest.mark.asyncio
    async def test_error_falls_back_to_known_models(self):
        def handler(request):
            return httpx.Response(500, text="oops")

        models = await list_models(api_key="k", transport=httpx.MockTransport(handler))

        assert models == list(KNOWN_MODELS)

    @pytest.mark.asyncio
    async def test_without_api_key(self):
        assert await list_models(api_key="") == list(KNOWN_MODELS)


class TestModelProbe:
    @pytest.mark.asyncio
    async def test_probe_all(self):
        probe = _probe(
            {
                "good": [Done(final_text="OK")],
                "empty": [Done(final_text="")],
                "broken": BackendFailure("Gemini API error (404): NOT_FOUND", status_code=404),
                "refusing": [Error("blocked")],
            }
        )

        report = await probe.probe_all(["good", "empty", "broken", "refusing", "good"])

        assert [r.model for r in report.results] == ["good", "empty", "broken", "refusing"]
        assert report.working_models == ["good"]
        assert report.failed_models == ["empty", "broken", "refusing"]
        assert "NOT_FOUND" in report.results[2].error
        assert report.results[3].error == "blocked"
        assert probe.last_report is report

    def test_best_available_without_report(self):
        assert _probe({}).best_available("preferred") == "preferred"

    def test_best_available(self):
        probe = _probe({})
        probe.last_report = ModelProbeReport(
            results=[
                ModelProbeResult("a", BackendKind.GEMINI, ModelStatus.FAILED),
                ModelProbeResult("b", BackendKind.GEMINI, ModelStatus.WORKING),
                ModelProbeResult("c", BackendKind.GEMINI, ModelStatus.WORKING),
            ]
        )

        assert probe.best_available("b") == "b"
        assert probe.best_available("a", ["x", "c"]) == "c"
        assert probe.best_available("a") == "b"

    def test_best_available_nothing_works(self):
        probe = _probe({})
        probe.last_report = ModelProbeReport(results=[ModelProbeResult("a", BackendKind.GEMINI, ModelStatus.FAILED)])
        assert probe.best_available("a", ["b"]) == "a"
