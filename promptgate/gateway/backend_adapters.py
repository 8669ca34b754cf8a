"""Backend Adapters — transport-level handling for each completion backend.

Each adapter turns a GatewayRequest into the backend's native protocol and
yields the common StreamEvent sequence (TextDelta / Metadata / Done / Error /
Cancelled) for the Response Normalizer.

Transport-specific behaviors:
  - Process (cursor agent CLI, primary CLI): argv built from request options,
    stdout read incrementally, newline-delimited JSON events in stream-json
    mode, stderr drained concurrently, SIGTERM exit status → cancelled
  - Streaming HTTP (Gemini): bearer token from the Credential Manager with a
    static API key fallback, server-sent-event frames, fixed text path

Cancellation is raced against every read through the request's
CancellationToken; the process is terminated or the HTTP response closed
on every exit path. Caller cancellation is yielded as ``Cancelled`` and
never raised; all other failures raise ``BackendFailure`` for the fallback
policy to classify.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import shutil
import signal
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any

import httpx

from promptgate.core.config import settings
from promptgate.core.logging import log_extra
from promptgate.core.metrics import MALFORMED_FRAGMENTS
from promptgate.gateway.cancellation import RequestCancelled
from promptgate.gateway.credentials import CredentialManager
from promptgate.gateway.errors import (
    BackendFailure,
    CredentialUnavailable,
    MalformedStreamFragment,
    TransientBackendFailure,
)
from promptgate.gateway.field_paths import (
    CANDIDATE_TEXT_PATH,
    PARTIAL_DELTA_TEXT_PATH,
    PARTIAL_EVENT_TYPE_PATH,
    cost_of,
    error_message_of,
    get_path,
    model_of,
    session_id_of,
)
from promptgate.gateway.normalizer import extract_aggregate_text
from promptgate.gateway.types import (
    BackendConfig,
    BackendKind,
    Cancelled,
    Done,
    Error,
    GatewayRequest,
    Metadata,
    OutputMode,
    StreamEvent,
    TextDelta,
    backend_config,
)

logger = logging.getLogger(__name__)


class BaseBackendAdapter(ABC):
    """Base class for all backend adapters."""

    backend: BackendKind

    def __init__(self, config: BackendConfig | None = None):
        self.config = config or backend_config(self.backend)

    @property
    def default_model(self) -> str:
        return self.config.default_model

    @abstractmethod
    def stream(self, request: GatewayRequest) -> AsyncIterator[StreamEvent]:
        """Execute the request and yield its events in emission order."""
        ...

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the backend is installed / configured."""
        ...

    def _failure(
        self,
        message: str,
        request: GatewayRequest,
        start: float,
        failure_cls: type[BackendFailure] = BackendFailure,
        **kwargs: Any,
    ) -> BackendFailure:
        return failure_cls(
            message,
            backend=self.backend.value,
            model=request.model or self.default_model,
            duration_ms=_elapsed_ms(start),
            **kwargs,
        )

    def _malformed(self, error: MalformedStreamFragment) -> None:
        MALFORMED_FRAGMENTS.labels(backend=self.backend.value).inc()
        logger.warning("Skipping malformed %s stream fragment (%s): %.200s", self.backend.value, error.reason, error.fragment)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


# ---------------------------------------------------------------------------
# Newline-delimited JSON framing
# ---------------------------------------------------------------------------


class LineBuffer:
    """Splits incrementally decoded text into complete lines.

    An incomplete trailing line is carried forward until its newline
    arrives (or ``flush()`` is called at end of stream).
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return [line.strip() for line in lines if line.strip()]

    def flush(self) -> list[str]:
        tail, self._buffer = self._buffer.strip(), ""
        return [tail] if tail else []


def parse_json_object(fragment: str) -> dict[str, Any]:
    """Parse one JSON object or raise MalformedStreamFragment."""
    try:
        obj = json.loads(fragment)
    except json.JSONDecodeError as e:
        raise MalformedStreamFragment(fragment, f"invalid JSON: {e.msg}") from e
    if not isinstance(obj, dict):
        raise MalformedStreamFragment(fragment, "not a JSON object")
    return obj


def map_structured_event(obj: dict[str, Any], partials_seen: bool = False) -> list[StreamEvent]:
    """Map one structured CLI event to stream events.

    Known shapes:
      {type: "text", content}
      {type: "stream_event", event: {type: "content_block_delta", delta: {text}}}
      {type: "assistant", message: {content: [{type: "text", text}]}}
      {type: "result", result}          terminal text, overrides partials
      {type: "error", ...} / result with is_error
    A session id may ride on any event under ``session_id`` or ``chatId``.

    With ``partials_seen`` the whole-message ``assistant`` text is skipped;
    it repeats what the partial deltas already carried.
    """
    events: list[StreamEvent] = []
    event_type = obj.get("type")

    session_id = session_id_of(obj)
    cost = cost_of(obj) if event_type == "result" else None
    if session_id or cost is not None:
        events.append(Metadata(session_id=session_id, cost_estimate=cost))

    if event_type == "text":
        content = obj.get("content")
        if isinstance(content, str) and content:
            events.append(TextDelta(content))

    elif event_type == "stream_event":
        if get_path(obj, PARTIAL_EVENT_TYPE_PATH) == "content_block_delta":
            text = get_path(obj, PARTIAL_DELTA_TEXT_PATH)
            if isinstance(text, str) and text:
                events.append(TextDelta(text))

    elif event_type == "assistant" and not partials_seen:
        parts = get_path(obj, ("message", "content"))
        for part in parts if isinstance(parts, list) else []:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str) and text:
                    events.append(TextDelta(text))

    elif event_type == "result":
        subtype = obj.get("subtype")
        if obj.get("is_error") or (isinstance(subtype, str) and subtype.startswith("error")):
            events.append(Error(error_message_of(obj) or "backend reported an error", details=obj))
        else:
            result = obj.get("result")
            events.append(Done(final_text=result if isinstance(result, str) else None))

    elif event_type == "error":
        events.append(Error(error_message_of(obj) or "backend reported an error", details=obj))

    return events


# ---------------------------------------------------------------------------
# Process Adapter (command-line backends)
# ---------------------------------------------------------------------------

# Exit status of a child terminated by SIGTERM: 128 + 15 from a shell
# wrapper, negative signal number as reported by asyncio for a direct child
CANCELLED_EXIT_CODES = frozenset({128 + signal.SIGTERM, -signal.SIGTERM})


@dataclass(frozen=True)
class CliProfile:
    """Flag spellings and capabilities of one command-line backend.

    A flag set to None is unsupported by that CLI; the corresponding
    request option is dropped (workspace becomes the subprocess cwd).
    """

    name: str
    executable: str
    subcommand: str | None = None
    print_flag: str = "--print"
    output_format_flag: str = "--output-format"
    partial_output_flags: tuple[str, ...] = ("--stream-partial-output",)
    model_flag: str | None = "--model"
    workspace_flag: str | None = "--workspace"
    force_flags: tuple[str, ...] = ("--force",)
    sandbox_flag: str | None = "--sandbox"
    resume_flag: str | None = "--resume"
    extra_args: tuple[str, ...] = ()


CURSOR_PROFILE = CliProfile(name="cursor", executable="cursor", subcommand="agent")

CLAUDE_PROFILE = CliProfile(
    name="claude",
    executable="claude",
    # stream-json under --print requires --verbose
    partial_output_flags=("--verbose", "--include-partial-messages"),
    workspace_flag=None,
    force_flags=("--dangerously-skip-permissions",),
    sandbox_flag=None,
)


class ProcessAdapter(BaseBackendAdapter):
    """Spawns a CLI per request and parses its stdout."""

    def __init__(
        self,
        profile: CliProfile,
        config: BackendConfig | None = None,
        chunk_size: int | None = None,
        terminate_grace_seconds: float | None = None,
    ):
        super().__init__(config=config)
        self.profile = profile
        self.chunk_size = chunk_size or settings.process_read_chunk_size
        self.terminate_grace_seconds = (
            terminate_grace_seconds
            if terminate_grace_seconds is not None
            else settings.process_terminate_grace_seconds
        )

    def build_args(self, request: GatewayRequest) -> list[str]:
        """Argument vector, excluding the executable itself."""
        profile = self.profile
        mode = request.effective_output_mode

        args: list[str] = []
        if profile.subcommand:
            args.append(profile.subcommand)
        args += [profile.print_flag, profile.output_format_flag, mode.value]
        if mode is OutputMode.STREAM_JSON:
            args += list(profile.partial_output_flags)

        if request.model and profile.model_flag:
            args += [profile.model_flag, request.model]
        if request.workspace_dir and profile.workspace_flag:
            args += [profile.workspace_flag, request.workspace_dir]
        if request.force_approve:
            args += list(profile.force_flags)
        if request.sandbox_mode is not None and profile.sandbox_flag:
            args += [profile.sandbox_flag, request.sandbox_mode.value]
        if request.resume_session_id and profile.resume_flag:
            args += [profile.resume_flag, request.resume_session_id]

        args += list(profile.extra_args)
        args.append(request.prompt)
        return args

    def build_command(self, request: GatewayRequest) -> list[str]:
        return [self.profile.executable, *self.build_args(request)]

    async def is_available(self) -> bool:
        return shutil.which(self.profile.executable) is not None

    async def stream(self, request: GatewayRequest) -> AsyncIterator[StreamEvent]:
        token = request.cancel_token
        mode = request.effective_output_mode
        start = time.monotonic()

        if token.cancelled:
            yield Cancelled(token.reason)
            return

        cwd = request.workspace_dir or None if self.profile.workspace_flag is None else None
        logger.info(
            "Spawning %s for request %s (model=%s, mode=%s)",
            self.profile.name,
            request.request_id,
            request.model or "default",
            mode.value,
            extra=log_extra(request),
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(request),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as e:
            raise self._failure(
                f"{self.profile.executable} could not be started: {e}",
                request,
                start,
                diagnostic=str(e),
            ) from e

        stderr_task = asyncio.create_task(self._drain(proc.stderr))
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        lines = LineBuffer()
        state: dict[str, Any] = {"partials": False}
        stdout_parts: list[str] = []
        terminal: Done | Error | None = None

        try:
            while True:
                chunk = await token.run(proc.stdout.read(self.chunk_size))
                if not chunk:
                    break
                text = decoder.decode(chunk)
                stdout_parts.append(text)

                if mode is OutputMode.PLAIN:
                    if text:
                        yield TextDelta(text)
                elif mode is OutputMode.STREAM_JSON:
                    for line in lines.feed(text):
                        for event in self._line_events(line, state):
                            if isinstance(event, (Done, Error)):
                                terminal = event
                            else:
                                yield event

            tail = decoder.decode(b"", final=True)
            stdout_parts.append(tail)
            if mode is OutputMode.PLAIN and tail:
                yield TextDelta(tail)
            elif mode is OutputMode.STREAM_JSON:
                for line in lines.feed(tail) + lines.flush():
                    for event in self._line_events(line, state):
                        if isinstance(event, (Done, Error)):
                            terminal = event
                        else:
                            yield event

            returncode = await token.run(proc.wait())
            stderr_text = await token.run(stderr_task)
        except RequestCancelled as e:
            await self._terminate(proc)
            logger.info("%s request %s cancelled", self.profile.name, request.request_id, extra=log_extra(request))
            yield Cancelled(e.reason)
            return
        finally:
            if proc.returncode is None:
                await self._terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()

        stdout_text = "".join(stdout_parts)

        if token.cancelled or returncode in CANCELLED_EXIT_CODES:
            logger.info(
                "%s exited with %s (terminated); treating as cancelled",
                self.profile.name,
                returncode,
                extra=log_extra(request, exit_code=returncode),
            )
            yield Cancelled(token.reason or f"terminated (exit code {returncode})")
            return

        if returncode != 0:
            diagnostic = f"stderr: {stderr_text.strip()}\nstdout: {stdout_text.strip()}"
            if isinstance(terminal, Error):
                diagnostic += f"\nerror event: {terminal.info}"
            raise self._failure(
                f"{self.profile.executable} exited with code {returncode}",
                request,
                start,
                diagnostic=diagnostic,
                exit_code=returncode,
            )

        if mode is OutputMode.JSON:
            for event in self._aggregate_events(stdout_text):
                yield event
        elif mode is OutputMode.PLAIN:
            yield Done()
        else:
            yield terminal or Done()

    def _line_events(self, line: str, state: dict[str, Any]) -> list[StreamEvent]:
        try:
            obj = parse_json_object(line)
        except MalformedStreamFragment as e:
            self._malformed(e)
            return []
        events = map_structured_event(obj, partials_seen=state["partials"])
        if obj.get("type") == "stream_event" and any(isinstance(e, TextDelta) for e in events):
            state["partials"] = True
        return events

    def _aggregate_events(self, stdout_text: str) -> list[StreamEvent]:
        """Single JSON object at exit; raw output when it is not JSON."""
        if not stdout_text.strip():
            return [Done(final_text="")]
        try:
            obj = parse_json_object(stdout_text.strip())
        except MalformedStreamFragment:
            logger.warning("Could not parse %s JSON response, using raw output", self.profile.name)
            return [Done(final_text=stdout_text)]

        if obj.get("type") == "result":
            return map_structured_event(obj)

        events: list[StreamEvent] = []
        session_id = session_id_of(obj)
        cost = cost_of(obj)
        if session_id or cost is not None:
            events.append(Metadata(session_id=session_id, cost_estimate=cost))
        events.append(Done(final_text=extract_aggregate_text(obj) or stdout_text))
        return events

    @staticmethod
    async def _drain(stream: asyncio.StreamReader) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parts: list[str] = []
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            parts.append(decoder.decode(chunk))
        parts.append(decoder.decode(b"", final=True))
        return "".join(parts)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("%s did not exit after SIGTERM; killing pid %s", self.profile.name, proc.pid)
            proc.kill()
            await proc.wait()


class CursorCLIAdapter(ProcessAdapter):
    """cursor agent CLI."""

    backend = BackendKind.CURSOR

    def __init__(self, profile: CliProfile | None = None, **kwargs):
        super().__init__(profile or replace(CURSOR_PROFILE, executable=settings.cursor_executable), **kwargs)


class ClaudeCLIAdapter(ProcessAdapter):
    """Primary CLI."""

    backend = BackendKind.CLAUDE

    def __init__(self, profile: CliProfile | None = None, **kwargs):
        super().__init__(profile or replace(CLAUDE_PROFILE, executable=settings.claude_executable), **kwargs)


# ---------------------------------------------------------------------------
# Server-sent-event framing
# ---------------------------------------------------------------------------


class SSEDecoder:
    """Splits a text stream into SSE messages and returns their data payloads.

    Messages are separated by a blank line; within a message, ``data:``
    lines are joined with newlines and other fields are ignored.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._pending_cr = False

    def feed(self, text: str) -> list[str]:
        if self._pending_cr:
            text = "\r" + text
        # A trailing "\r" may be the first half of a "\r\n" split across chunks
        self._pending_cr = text.endswith("\r")
        if self._pending_cr:
            text = text[:-1]
        self._buffer += self._normalize(text)
        *messages, self._buffer = self._buffer.split("\n\n")
        return [data for data in map(self._data_of, messages) if data is not None]

    def flush(self) -> list[str]:
        message = self._buffer + ("\n" if self._pending_cr else "")
        self._buffer, self._pending_cr = "", False
        data = self._data_of(message)
        return [data] if data is not None else []

    @staticmethod
    def _normalize(text: str) -> str:
        # SSE lines end in CRLF, LF or a bare CR
        return text.replace("\r\n", "\n").replace("\r", "\n")

    @staticmethod
    def _data_of(message: str) -> str | None:
        data_lines = []
        for line in message.split("\n"):
            if line.startswith("data:"):
                value = line[5:]
                data_lines.append(value[1:] if value.startswith(" ") else value)
        if not data_lines:
            return None
        return "\n".join(data_lines).strip()


# ---------------------------------------------------------------------------
# Gemini Streaming Adapter (Generative Language API)
# ---------------------------------------------------------------------------

# Pricing per 1M tokens
_GEMINI_PRICING = {
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    "gemini-3-flash-preview": {"input": 0.50, "output": 3.00},
    "gemini-3-pro-preview": {"input": 2.00, "output": 12.00},
}

DONE_SENTINEL = "[DONE]"


class GeminiStreamingAdapter(BaseBackendAdapter):
    """Generative Language API over SSE with OAuth-first authentication.

    Auth order: bearer token from the Credential Manager, then the static
    API key. Any failure of the bearer-token attempt before output is
    retried once with the API key, if one is configured; a token rejected
    with 401/403 is also cleared from the cache.
    """

    backend = BackendKind.GEMINI

    def __init__(
        self,
        credentials: CredentialManager | None = None,
        api_key: str | None = None,
        config: BackendConfig | None = None,
        api_base: str | None = None,
        prefer_credential_helper: bool | None = None,
        connect_timeout: float | None = None,
        project: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(config=config)
        self.credentials = credentials
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.api_base = (api_base or settings.gemini_api_base).rstrip("/")
        self.prefer_credential_helper = (
            prefer_credential_helper if prefer_credential_helper is not None else settings.prefer_credential_helper
        )
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.http_connect_timeout
        self.project = project if project is not None else settings.google_cloud_project
        self._transport = transport

    def endpoint(self, model: str, streaming: bool) -> str:
        safe_model = model if "/" in model else f"models/{model}"
        method = "streamGenerateContent" if streaming else "generateContent"
        return f"{self.api_base}/{safe_model}:{method}"

    async def is_available(self) -> bool:
        if self.api_key:
            return True
        return self.credentials is not None and await self.credentials.is_available()

    async def stream(self, request: GatewayRequest) -> AsyncIterator[StreamEvent]:
        token = request.cancel_token
        start = time.monotonic()

        try:
            auths = await self._auth_candidates(request)
        except RequestCancelled as e:
            yield Cancelled(e.reason)
            return

        if not auths:
            if self.credentials is not None:
                raise await self.credentials.unavailable_error()
            raise CredentialUnavailable(
                "No credential available for the streaming backend.",
                "Configure the credential helper or set the GEMINI_API_KEY environment variable.",
            )

        for index, (auth_kind, headers, params) in enumerate(auths):
            emitted = False
            try:
                async with aclosing(self._stream_once(request, auth_kind, headers, params, start)) as events:
                    async for event in events:
                        emitted = True
                        yield event
                return
            except BackendFailure as e:
                retry_with_key = (
                    auth_kind == "oauth"
                    and not emitted
                    and index + 1 < len(auths)
                    and not token.cancelled
                )
                if not retry_with_key:
                    raise
                if e.status_code in (401, 403):
                    logger.warning(
                        "Bearer token rejected (%s); retrying with API key",
                        e.status_code,
                        extra=log_extra(request, status_code=e.status_code),
                    )
                    if self.credentials is not None:
                        self.credentials.clear_token()
                else:
                    logger.warning(
                        "Bearer token request failed (%s); retrying with API key",
                        e.message,
                        extra=log_extra(request, status_code=e.status_code),
                    )

    async def _auth_candidates(self, request: GatewayRequest) -> list[tuple[str, dict[str, str], dict[str, str]]]:
        auths: list[tuple[str, dict[str, str], dict[str, str]]] = []
        if self.prefer_credential_helper and self.credentials is not None:
            bearer = await self.credentials.get_token(request.cancel_token)
            if bearer:
                headers = {"Authorization": f"Bearer {bearer}"}
                if self.project:
                    headers["x-goog-user-project"] = self.project
                auths.append(("oauth", headers, {}))
        if self.api_key:
            if auths:
                logger.debug("API key available as fallback for bearer token")
            auths.append(("key", {}, {"key": self.api_key}))
        return auths

    async def _stream_once(
        self,
        request: GatewayRequest,
        auth_kind: str,
        headers: dict[str, str],
        params: dict[str, str],
        start: float,
    ) -> AsyncIterator[StreamEvent]:
        token = request.cancel_token
        model = request.model or self.default_model
        streaming = request.streaming
        if streaming:
            params = {**params, "alt": "sse"}

        payload = {"contents": [{"parts": [{"text": request.prompt}]}]}
        timeout = httpx.Timeout(None, connect=self.connect_timeout)

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            http_request = client.build_request(
                "POST",
                self.endpoint(model, streaming),
                json=payload,
                params=params,
                headers={**headers, "Content-Type": "application/json"},
            )
            try:
                response = await token.run(client.send(http_request, stream=True))
            except RequestCancelled as e:
                yield Cancelled(e.reason)
                return
            except httpx.TransportError as e:
                raise self._failure(
                    f"Gemini unreachable: {e.__class__.__name__}",
                    request,
                    start,
                    TransientBackendFailure,
                    diagnostic=str(e),
                ) from e

            try:
                if response.status_code >= 400:
                    body = (await token.run(response.aread())).decode("utf-8", errors="replace")
                    raise self._status_failure(response.status_code, body, request, start)

                chat_id = f"genai-{auth_kind}-{int(time.time() * 1000)}"
                if streaming:
                    async with aclosing(self._sse_events(response, request, model, chat_id)) as events:
                        async for event in events:
                            yield event
                else:
                    body = await token.run(response.aread())
                    for event in self._aggregate_events(body.decode("utf-8", errors="replace"), model, chat_id):
                        yield event
            except RequestCancelled as e:
                logger.info("Gemini request %s cancelled", request.request_id, extra=log_extra(request))
                yield Cancelled(e.reason)
            except httpx.TransportError as e:
                raise self._failure(
                    f"Gemini connection lost: {e.__class__.__name__}",
                    request,
                    start,
                    TransientBackendFailure,
                    diagnostic=str(e),
                ) from e
            finally:
                await response.aclose()

    async def _sse_events(
        self,
        response: httpx.Response,
        request: GatewayRequest,
        model: str,
        chat_id: str,
    ) -> AsyncIterator[StreamEvent]:
        token = request.cancel_token
        decoder = SSEDecoder()
        text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        state: dict[str, Any] = {"model": model, "usage": {}}

        async with aclosing(response.aiter_bytes()) as chunks:
            while True:
                chunk = await token.run(_next_chunk(chunks))
                if chunk is None:
                    break
                for data in decoder.feed(text_decoder.decode(chunk)):
                    for event in self._frame_events(data, state):
                        yield event
                        if isinstance(event, Error):
                            return

        for data in decoder.feed(text_decoder.decode(b"", final=True)) + decoder.flush():
            for event in self._frame_events(data, state):
                yield event
                if isinstance(event, Error):
                    return

        yield Metadata(
            session_id=chat_id,
            cost_estimate=self._usage_cost(state["model"], state["usage"]),
            model=state["model"],
        )
        yield Done()

    def _frame_events(self, data: str, state: dict[str, Any]) -> list[StreamEvent]:
        if data == DONE_SENTINEL or not data:
            return []
        try:
            obj = parse_json_object(data)
        except MalformedStreamFragment as e:
            self._malformed(e)
            return []

        if "error" in obj:
            details = obj["error"] if isinstance(obj["error"], dict) else {"error": obj["error"]}
            return [Error(error_message_of(obj) or "streaming backend reported an error", details=details)]

        usage = obj.get("usageMetadata")
        if isinstance(usage, dict):
            state["usage"] = usage
        reported_model = model_of(obj)
        if reported_model:
            state["model"] = reported_model

        text = get_path(obj, CANDIDATE_TEXT_PATH)
        if isinstance(text, str) and text:
            return [TextDelta(text)]
        return []

    def _aggregate_events(self, body: str, model: str, chat_id: str) -> list[StreamEvent]:
        try:
            obj = parse_json_object(body)
        except MalformedStreamFragment as e:
            self._malformed(e)
            return [Error("streaming backend returned an unparseable body", details={"body": body[:2000]})]

        if "error" in obj:
            details = obj["error"] if isinstance(obj["error"], dict) else {"error": obj["error"]}
            return [Error(error_message_of(obj) or "streaming backend reported an error", details=details)]

        reported_model = model_of(obj) or model
        usage = obj.get("usageMetadata") if isinstance(obj.get("usageMetadata"), dict) else {}
        return [
            Metadata(
                session_id=chat_id,
                cost_estimate=self._usage_cost(reported_model, usage),
                model=reported_model,
            ),
            Done(final_text=extract_aggregate_text(obj)),
        ]

    def _status_failure(self, status_code: int, body: str, request: GatewayRequest, start: float) -> BackendFailure:
        detail = ""
        try:
            obj = json.loads(body)
            error = obj.get("error") if isinstance(obj, dict) else None
            if isinstance(error, dict):
                detail = " ".join(str(error.get(k, "")) for k in ("status", "message")).strip()
        except json.JSONDecodeError:
            pass
        message = f"Gemini API error ({status_code})"
        if detail:
            message = f"{message}: {detail}"
        return self._failure(message, request, start, diagnostic=body[:2000], status_code=status_code)

    def _usage_cost(self, model: str, usage: dict[str, Any]) -> float | None:
        if not usage:
            return None
        input_tokens = int(usage.get("promptTokenCount", 0) or 0)
        output_tokens = int(usage.get("candidatesTokenCount", 0) or 0)
        return self._calc_cost(model, input_tokens, output_tokens)

    @staticmethod
    def _calc_cost(model: str, input_tokens: int, output_tokens: int) -> float:
        name = model.removeprefix("models/")
        pricing = _GEMINI_PRICING.get(name, _GEMINI_PRICING["gemini-2.0-flash"])
        return round((input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000, 6)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[BackendKind, type[BaseBackendAdapter]] = {
    BackendKind.CURSOR: CursorCLIAdapter,
    BackendKind.CLAUDE: ClaudeCLIAdapter,
    BackendKind.GEMINI: GeminiStreamingAdapter,
}


def get_adapter(backend: BackendKind, **kwargs) -> BaseBackendAdapter:
    """Factory: get the appropriate adapter for a backend."""
    cls = ADAPTER_REGISTRY.get(backend)
    if cls is None:
        raise ValueError(f"No adapter registered for backend: {backend}")
    return cls(**kwargs)
