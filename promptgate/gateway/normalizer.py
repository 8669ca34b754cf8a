"""Response Normalizer — resolves an adapter's event sequence into a Response.

Applies the same rules to every backend:
  - Invokes the incremental callback once per TextDelta, in receipt order
  - Merges Metadata (session id, cost estimate, reported model)
  - Ends on the first Done / Error / Cancelled event
  - ``Done.final_text`` overrides the accumulated deltas when present
  - Closes the adapter's iterator on every exit path so the process or
    HTTP response is released
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import Any, Union

from promptgate.gateway.field_paths import AGGREGATE_TEXT_FIELDS, first_text
from promptgate.gateway.types import (
    Cancelled,
    Done,
    Error,
    GatewayRequest,
    GatewayResponse,
    Metadata,
    StopReason,
    StreamEvent,
    TextDelta,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


def extract_aggregate_text(payload: Any) -> str:
    """Text of a single (non-streaming) payload via the prioritized lookup."""
    return first_text(payload, AGGREGATE_TEXT_FIELDS) or ""


async def _emit(on_chunk: ChunkCallback | None, text: str, request_id: str) -> None:
    if on_chunk is None:
        return
    try:
        result = on_chunk(text)
        if inspect.isawaitable(result):
            await result
    except Exception:
        # A failing consumer must not take the backend stream down with it
        logger.exception("Chunk callback failed for request %s", request_id)


async def normalize_stream(
    events: AsyncIterator[StreamEvent],
    request: GatewayRequest,
    on_chunk: ChunkCallback | None = None,
    start: float | None = None,
) -> GatewayResponse:
    """Consume ``events`` and produce exactly one terminal GatewayResponse.

    Exceptions raised by the adapter (BackendFailure, CredentialUnavailable)
    propagate unchanged; the iterator is still closed.
    """
    start = time.monotonic() if start is None else start
    parts: list[str] = []
    final_text: str | None = None
    session_id: str | None = None
    cost_estimate: float | None = None
    model_used = request.model
    stop_reason: StopReason | None = None
    error_message = ""

    async with aclosing(events) as stream:
        async for event in stream:
            if isinstance(event, TextDelta):
                parts.append(event.text)
                await _emit(on_chunk, event.text, request.request_id)

            elif isinstance(event, Metadata):
                session_id = event.session_id or session_id
                if event.cost_estimate is not None:
                    cost_estimate = event.cost_estimate
                model_used = event.model or model_used

            elif isinstance(event, Done):
                final_text = event.final_text
                stop_reason = StopReason.SUCCESS
                break

            elif isinstance(event, Error):
                stop_reason = StopReason.ERROR
                error_message = event.info
                break

            elif isinstance(event, Cancelled):
                stop_reason = StopReason.CANCELLED
                error_message = event.reason
                break

    if stop_reason is None:
        # Iterator ended without a terminal event
        stop_reason = StopReason.CANCELLED if request.cancel_token.cancelled else StopReason.SUCCESS

    text = final_text if final_text is not None else "".join(parts)

    return GatewayResponse(
        text=text,
        duration_ms=int((time.monotonic() - start) * 1000),
        model_used=model_used,
        stop_reason=stop_reason,
        session_id=session_id,
        cost_estimate=cost_estimate,
        request_id=request.request_id,
        backend=request.backend,
        error_message=error_message,
    )
