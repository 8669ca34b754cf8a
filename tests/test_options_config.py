"""Tests for caller options validation and settings."""

from __future__ import annotations

import logging

import pydantic
import pytest

from promptgate.core.config import Settings, settings, validate_settings_for_production
from promptgate.core.logging import JSONFormatter
from promptgate.core.metrics import metrics_payload
from promptgate.gateway.cancellation import CancellationToken
from promptgate.gateway.types import BackendKind, OutputMode, SandboxMode
from promptgate.schemas.options import GatewayOptions


class TestGatewayOptions:
    def test_defaults(self):
        options = GatewayOptions()
        assert options.backend is BackendKind.CURSOR
        assert options.streaming is False
        assert options.sandbox_mode is None

    def test_parses_enums_from_strings(self):
        options = GatewayOptions.model_validate(
            {"backend": "gemini", "sandbox_mode": "enabled", "output_mode": "stream-json"}
        )
        assert options.backend is BackendKind.GEMINI
        assert options.sandbox_mode is SandboxMode.ENABLED
        assert options.output_mode is OutputMode.STREAM_JSON

    def test_unknown_option_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            GatewayOptions.model_validate({"timeout": 30})

    def test_whitespace_stripped(self):
        options = GatewayOptions(model="  m1 ", resume_session_id=" s1\n")
        assert options.model == "m1"
        assert options.resume_session_id == "s1"

    def test_to_request(self):
        token = CancellationToken()
        options = GatewayOptions(
            backend=BackendKind.CLAUDE,
            model="m1",
            workspace_dir="/w",
            force_approve=True,
            sandbox_mode=SandboxMode.DISABLED,
            resume_session_id="s1",
            streaming=True,
            memory_session_id="mem",
        )

        request = options.to_request("prompt text", token)

        assert request.prompt == "prompt text"
        assert request.backend is BackendKind.CLAUDE
        assert request.model == "m1"
        assert request.workspace_dir == "/w"
        assert request.force_approve is True
        assert request.sandbox_mode is SandboxMode.DISABLED
        assert request.resume_session_id == "s1"
        assert request.streaming is True
        assert request.memory_session_id == "mem"
        assert request.cancel_token is token

    def test_to_request_creates_token(self):
        request = GatewayOptions().to_request("p")
        assert isinstance(request.cancel_token, CancellationToken)


class TestSettings:
    def test_api_key_aliases(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "from-google")
        assert Settings(_env_file=None).gemini_api_key == "from-google"

        monkeypatch.setenv("GEMINI_API_KEY", "from-gemini")
        assert Settings(_env_file=None).gemini_api_key == "from-gemini"

    def test_fallback_chains_from_env(self, monkeypatch):
        monkeypatch.setenv("FALLBACK_CHAINS", '{"gemini-2.5-flash": ["gemini-3-flash-preview"]}')
        assert Settings(_env_file=None).fallback_chains == {"gemini-2.5-flash": ["gemini-3-flash-preview"]}

    def test_defaults(self, monkeypatch):
        for name in ("CURSOR_EXECUTABLE", "CREDENTIAL_HELPER_EXECUTABLE", "TOKEN_LIFETIME_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        s = Settings(_env_file=None)
        assert s.cursor_executable == "cursor"
        assert s.credential_helper_executable == "gcloud"
        assert s.token_lifetime_seconds == 3600
        assert s.token_refresh_buffer_seconds == 300
        assert s.token_revalidate_seconds == 600

    def test_validate_passes_with_defaults(self):
        validate_settings_for_production()

    def test_validate_rejects_regressing_chain(self, monkeypatch):
        monkeypatch.setattr(settings, "fallback_chains", {"gemini-3-pro-preview": ["gemini-2.0-flash"]})
        with pytest.raises(SystemExit, match="FALLBACK_CHAINS"):
            validate_settings_for_production()

    def test_validate_production_requires_some_credential(self, monkeypatch):
        monkeypatch.setattr(settings, "app_env", "production")
        monkeypatch.setattr(settings, "app_debug", False)
        monkeypatch.setattr(settings, "prefer_credential_helper", False)
        monkeypatch.setattr(settings, "gemini_api_key", "")
        with pytest.raises(SystemExit, match="GEMINI_API_KEY"):
            validate_settings_for_production()


class TestAmbient:
    def test_json_formatter(self):
        record = logging.LogRecord("promptgate.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.backend = "gemini"
        output = JSONFormatter().format(record)
        assert '"message": "hello world"' in output
        assert '"backend": "gemini"' in output

    def test_metrics_payload(self):
        payload = metrics_payload()
        assert b"promptgate_submissions_total" in payload
