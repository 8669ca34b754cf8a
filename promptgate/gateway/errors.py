"""Gateway error types.

Only ``CredentialUnavailable`` and ``TerminalBackendFailure`` (including
``FallbackExhaustedError``) ever reach the gateway's caller. Cancellation
is not an error: it is folded into ``GatewayResponse.stop_reason``.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base exception for gateway errors."""


class BackendFailure(GatewayError):
    """A backend attempt failed at the process or connection level.

    Raised by adapters; the fallback policy classifies it.
    """

    def __init__(
        self,
        message: str,
        backend: str = "",
        model: str = "",
        duration_ms: int = 0,
        diagnostic: str = "",
        exit_code: int | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.model = model
        self.duration_ms = duration_ms
        self.diagnostic = diagnostic
        self.exit_code = exit_code
        self.status_code = status_code

    @property
    def signature_text(self) -> str:
        """Text the classifier matches trigger patterns against."""
        return f"{self.message}\n{self.diagnostic}".lower()


class TransientBackendFailure(BackendFailure):
    """Rate limiting, temporary unavailability, unreachable target."""


class TerminalBackendFailure(BackendFailure):
    """Bad arguments, authentication failure, malformed request. Not retried."""

    def __init__(self, message: str, attempted_models: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.attempted_models = list(attempted_models or [])

    @classmethod
    def from_failure(cls, failure: BackendFailure, attempted_models: list[str]) -> TerminalBackendFailure:
        """Annotate ``failure`` with the models attempted for this request."""
        message = failure.message
        if attempted_models:
            message = f"{message} (attempted models: {', '.join(attempted_models)})"
        return cls(
            message,
            attempted_models=attempted_models,
            backend=failure.backend,
            model=failure.model,
            duration_ms=failure.duration_ms,
            diagnostic=failure.diagnostic,
            exit_code=failure.exit_code,
            status_code=failure.status_code,
        )


class FallbackExhaustedError(TerminalBackendFailure):
    """Every candidate in the fallback chain failed transiently."""


class CredentialUnavailable(GatewayError):
    """Neither the credential helper nor a static API key produced a credential."""

    def __init__(self, message: str, remediation: str = ""):
        super().__init__(f"{message}\n{remediation}" if remediation else message)
        self.message = message
        self.remediation = remediation


class MalformedStreamFragment(GatewayError):
    """A stream line or frame could not be parsed. Always logged and skipped."""

    def __init__(self, fragment: str, reason: str = ""):
        super().__init__(reason or "malformed stream fragment")
        self.fragment = fragment
        self.reason = reason
