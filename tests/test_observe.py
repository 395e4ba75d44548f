"""
Tests for the observe decorator: spans, span paths, and LLM interception.
"""

import json

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from rollout_dev.sdk import tracing
from rollout_dev.sdk.registry import EntrypointRegistry
from rollout_dev.sdk.rollout.interceptor import (
    Interceptor,
    LLMCall,
    Replay,
    register_interceptor,
)
from rollout_dev.sdk.tracing import observe


class RecordingInterceptor(Interceptor):
    def __init__(self, answers: dict[str, object]):
        self.answers = answers
        self.calls: list[LLMCall] = []

    def intercept(self, call: LLMCall) -> Replay | None:
        self.calls.append(call)
        if call.path in self.answers:
            return Replay(output=self.answers[call.path], index=0)
        return None


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    tracing.init_tracing(
        project_api_key=None,
        exporter=exporter,
        association_properties={"rollout_session_id": "session-1"},
    )
    return exporter


def test_init_tracing_is_idempotent(span_exporter):
    assert tracing.is_tracing_initialized()
    assert tracing.init_tracing(project_api_key=None, exporter=InMemorySpanExporter()) is False


def test_observe_records_input_output_and_path(span_exporter):
    @observe(name="outer")
    def outer(x: int):
        return inner(x) + 1

    @observe()
    def inner(x: int):
        return x * 2

    assert outer(3) == 7

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    assert set(spans) == {"outer", "inner"}
    assert list(spans["inner"].attributes[tracing.SPAN_PATH]) == ["outer", "inner"]
    assert json.loads(spans["outer"].attributes[tracing.SPAN_INPUT]) == {"x": 3}
    assert json.loads(spans["outer"].attributes[tracing.SPAN_OUTPUT]) == 7
    assert (
        spans["outer"].attributes[f"{tracing.ASSOCIATION_PROPERTIES}.rollout_session_id"]
        == "session-1"
    )


def test_observe_ignore_input_and_output(span_exporter):
    @observe(ignore_input=True, ignore_output=True)
    def secret(token: str):
        return token

    secret("abc")

    span = span_exporter.get_finished_spans()[0]
    assert tracing.SPAN_INPUT not in span.attributes
    assert tracing.SPAN_OUTPUT not in span.attributes


@pytest.mark.asyncio
async def test_async_observe_keeps_path(span_exporter):
    seen_paths = []

    @observe(name="agent")
    async def agent():
        return await step()

    @observe(name="step")
    async def step():
        seen_paths.append(tracing.current_span_path())
        return "done"

    assert await agent() == "done"
    assert seen_paths == ["agent.step"]
    assert tracing.current_span_path() == ""


def test_llm_span_replayed_by_interceptor(span_exporter):
    """An answered LLM call never runs and its span is marked cached."""
    interceptor = RecordingInterceptor({"agent.llm": "recorded"})
    register_interceptor(interceptor)
    live_calls = []

    @observe(name="agent")
    def agent():
        return llm("hello")

    @observe(name="llm", span_type="LLM")
    def llm(prompt: str):
        live_calls.append(prompt)
        return "live"

    assert agent() == "recorded"
    assert live_calls == []
    assert interceptor.calls[0].args == ("hello",)

    spans = {span.name: span for span in span_exporter.get_finished_spans()}
    assert spans["llm"].attributes[tracing.SPAN_CACHED] is True


def test_llm_span_runs_live_without_answer(span_exporter):
    register_interceptor(RecordingInterceptor({}))

    @observe(span_type="LLM")
    def llm():
        return "live"

    assert llm() == "live"


def test_default_spans_are_not_intercepted(span_exporter):
    interceptor = RecordingInterceptor({"tool": "recorded"})
    register_interceptor(interceptor)

    @observe(name="tool", span_type="TOOL")
    def tool():
        return "live"

    assert tool() == "live"
    assert interceptor.calls == []


def test_observe_without_tracing_still_runs():
    @observe()
    def plain(x):
        return x + 1

    assert plain(1) == 2


def test_rollout_entrypoint_registers_only_while_collecting():
    registry = EntrypointRegistry()

    @observe(name="outside", rollout_entrypoint=True)
    def outside():
        pass

    with registry.collecting():

        @observe(name="inside", rollout_entrypoint=True)
        def inside():
            pass

    assert registry.names() == ["inside"]
    assert registry.get("inside").func is inside
