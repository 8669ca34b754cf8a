"""Tests for the Response Normalizer."""

from __future__ import annotations

import pytest

from promptgate.gateway.cancellation import CancellationToken
from promptgate.gateway.normalizer import extract_aggregate_text, normalize_stream
from promptgate.gateway.types import (
    BackendKind,
    Cancelled,
    Done,
    Error,
    GatewayRequest,
    Metadata,
    StopReason,
    TextDelta,
)


class Events:
    """Async iterator over fixed events that records whether it was closed."""

    def __init__(self, *events):
        self.events = events
        self.closed = False
        self.consumed = 0

    async def _generate(self):
        try:
            for event in self.events:
                self.consumed += 1
                yield event
        finally:
            self.closed = True

    def __call__(self):
        return self._generate()


def _request(**kwargs) -> GatewayRequest:
    kwargs.setdefault("prompt", "hi")
    kwargs.setdefault("model", "m1")
    return GatewayRequest(**kwargs)


class TestNormalizeStream:
    @pytest.mark.asyncio
    async def test_deltas_concatenate_in_order(self):
        events = Events(TextDelta("a"), TextDelta("b"), TextDelta("c"), Done())
        chunks: list[str] = []

        response = await normalize_stream(events(), _request(), chunks.append)

        assert chunks == ["a", "b", "c"]
        assert "".join(chunks) == response.text == "abc"
        assert response.stop_reason is StopReason.SUCCESS
        assert response.model_used == "m1"

    @pytest.mark.asyncio
    async def test_final_text_overrides_accumulation(self):
        events = Events(TextDelta("draft"), Done(final_text="final answer"))

        response = await normalize_stream(events(), _request())

        assert response.text == "final answer"

    @pytest.mark.asyncio
    async def test_empty_final_text_still_overrides(self):
        events = Events(TextDelta("draft"), Done(final_text=""))
        response = await normalize_stream(events(), _request())
        assert response.text == ""

    @pytest.mark.asyncio
    async def test_metadata_is_merged(self):
        events = Events(
            Metadata(session_id="s1"),
            TextDelta("x"),
            Metadata(cost_estimate=0.5, model="m1-002"),
            Done(),
        )

        response = await normalize_stream(events(), _request(backend=BackendKind.GEMINI))

        assert response.session_id == "s1"
        assert response.cost_estimate == 0.5
        assert response.model_used == "m1-002"
        assert response.backend is BackendKind.GEMINI

    @pytest.mark.asyncio
    async def test_error_event(self):
        events = Events(TextDelta("par"), Error("quota exceeded"), TextDelta("never"))

        response = await normalize_stream(events(), _request())

        assert response.stop_reason is StopReason.ERROR
        assert response.error_message == "quota exceeded"
        assert response.text == "par"
        assert events.consumed == 2
        assert events.closed

    @pytest.mark.asyncio
    async def test_cancelled_event_keeps_partial_text(self):
        events = Events(TextDelta("partial"), Cancelled("user stopped"))

        response = await normalize_stream(events(), _request())

        assert response.stop_reason is StopReason.CANCELLED
        assert response.text == "partial"

    @pytest.mark.asyncio
    async def test_stream_without_terminal_event(self):
        response = await normalize_stream(Events(TextDelta("x"))(), _request())
        assert response.stop_reason is StopReason.SUCCESS
        assert response.text == "x"

    @pytest.mark.asyncio
    async def test_stream_ending_after_cancel(self):
        token = CancellationToken()
        token.cancel()
        response = await normalize_stream(Events()(), _request(cancel_token=token))
        assert response.stop_reason is StopReason.CANCELLED

    @pytest.mark.asyncio
    async def test_async_callback(self):
        received: list[str] = []

        async def on_chunk(text):
            received.append(text)

        await normalize_stream(Events(TextDelta("a"), TextDelta("b"), Done())(), _request(), on_chunk)

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_abort_stream(self):
        calls: list[str] = []

        def on_chunk(text):
            calls.append(text)
            raise RuntimeError("consumer broke")

        response = await normalize_stream(Events(TextDelta("a"), TextDelta("b"), Done())(), _request(), on_chunk)

        assert calls == ["a", "b"]
        assert response.text == "ab"

    @pytest.mark.asyncio
    async def test_adapter_exception_propagates_and_closes(self):
        closed = False

        async def failing():
            nonlocal closed
            try:
                yield TextDelta("a")
                raise ValueError("adapter failed")
            finally:
                closed = True

        with pytest.raises(ValueError, match="adapter failed"):
            await normalize_stream(failing(), _request())
        assert closed

    @pytest.mark.asyncio
    async def test_response_is_fully_populated(self):
        request = _request()
        response = await normalize_stream(Events(Done(final_text="ok"))(), request)

        d = response.to_dict()
        assert d["request_id"] == request.request_id
        assert d["stop_reason"] == "success"
        assert d["backend"] == "cursor"
        assert d["duration_ms"] >= 0
        assert d["session_id"] is None


class TestExtractAggregateText:
    def test_candidates_path(self):
        assert extract_aggregate_text({"candidates": [{"content": {"parts": [{"text": "c"}]}}]}) == "c"

    def test_prioritized_fields(self):
        assert extract_aggregate_text({"output": "o", "text": "t"}) == "t"

    def test_nothing(self):
        assert extract_aggregate_text({"unrelated": 1}) == ""
        assert extract_aggregate_text(["not", "a", "dict"]) == ""
