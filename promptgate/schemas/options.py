"""Caller-facing submission options."""

from pydantic import BaseModel, ConfigDict, Field, field_validator

from promptgate.gateway.cancellation import CancellationToken
from promptgate.gateway.types import BackendKind, GatewayRequest, OutputMode, SandboxMode


class GatewayOptions(BaseModel):
    """Options accepted by ``CompletionGateway.submit``."""

    model_config = ConfigDict(extra="forbid")

    backend: BackendKind = BackendKind.CURSOR
    model: str = Field("", max_length=200)
    workspace_dir: str = ""
    force_approve: bool = False
    sandbox_mode: SandboxMode | None = None
    resume_session_id: str = Field("", max_length=200)
    streaming: bool = False
    output_mode: OutputMode | None = None
    memory_session_id: str = ""

    @field_validator("model", "workspace_dir", "resume_session_id", "memory_session_id")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()

    def to_request(self, prompt: str, cancel_token: CancellationToken | None = None) -> GatewayRequest:
        return GatewayRequest(
            prompt=prompt,
            backend=self.backend,
            model=self.model,
            workspace_dir=self.workspace_dir,
            streaming=self.streaming,
            cancel_token=cancel_token or CancellationToken(),
            resume_session_id=self.resume_session_id,
            force_approve=self.force_approve,
            sandbox_mode=self.sandbox_mode,
            output_mode=self.output_mode,
            memory_session_id=self.memory_session_id,
        )
