"""Unit tests for StreamAccumulator."""

import pytest

from chatgateway.models import (
    ContentDelta,
    Done,
    Finish,
    FinishReason,
    ResponseStart,
    ToolCall,
    ToolCallDelta,
    UsageUpdate,
)
from chatgateway.streaming import StreamAccumulator


def _feed(acc: StreamAccumulator, *events) -> StreamAccumulator:
    for event in events:
        acc.add(event)
    return acc


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class TestContent:
    def test_deltas_concatenate_in_order(self) -> None:
        acc = _feed(
            StreamAccumulator(model="gpt-4o"),
            ContentDelta("a"),
            ContentDelta("b"),
            ContentDelta("c"),
            Finish(FinishReason.STOP),
        )
        response = acc.build_response()
        assert response.content == "abc"
        assert response.finish_reason is FinishReason.STOP
        assert response.tool_calls == ()

    @pytest.mark.parametrize(
        "chunks",
        [("a", "b", "c"), ("ab", "c"), ("a", "bc"), ("abc",)],
    )
    def test_chunk_boundaries_do_not_matter(self, chunks: tuple[str, ...]) -> None:
        acc = _feed(
            StreamAccumulator(model="gpt-4o"),
            *(ContentDelta(chunk) for chunk in chunks),
            Finish(FinishReason.STOP),
            Done(),
        )
        response = acc.build_response()
        assert response.content == "abc"
        assert response.finish_reason is FinishReason.STOP

    def test_sink_receives_each_fragment(self) -> None:
        seen: list[str] = []
        _feed(StreamAccumulator(on_content=seen.append), ContentDelta("Hel"), ContentDelta("lo"))
        assert seen == ["Hel", "lo"]

    def test_empty_delta_ignored(self) -> None:
        seen: list[str] = []
        _feed(StreamAccumulator(on_content=seen.append), ContentDelta(""))
        assert seen == []

    def test_response_start_sets_id_and_model(self) -> None:
        acc = _feed(
            StreamAccumulator(model="requested"),
            ResponseStart(id="chatcmpl-42", model="gpt-4o-2024-08-06"),
            Done(),
        )
        response = acc.build_response()
        assert response.id == "chatcmpl-42"
        assert response.model == "gpt-4o-2024-08-06"

    def test_missing_id_is_generated(self) -> None:
        response = _feed(StreamAccumulator(model="m"), Done()).build_response()
        assert response.id.startswith("chatcmpl-")
        assert response.content == ""


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    def test_name_and_arguments_fragments_reassembled(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ToolCallDelta(id="call_1"),
            ToolCallDelta(name="get_"),
            ToolCallDelta(name="weather"),
            ToolCallDelta(arguments='{"city":'),
            ToolCallDelta(arguments='"NYC"}'),
            Finish(FinishReason.TOOL_CALLS),
        )
        response = acc.build_response()
        assert response.tool_calls == (
            ToolCall(id="call_1", function_name="get_weather", arguments_json='{"city":"NYC"}'),
        )
        assert response.finish_reason is FinishReason.TOOL_CALLS

    def test_fragments_reassembled(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ToolCallDelta(index=0, id="call_1", name="get_weather"),
            ToolCallDelta(index=0, arguments='{"ci'),
            ToolCallDelta(index=0, arguments='ty": "NYC"}'),
            Finish(FinishReason.TOOL_CALLS),
        )
        response = acc.build_response()
        assert response.tool_calls == (ToolCall("call_1", "get_weather", '{"city": "NYC"}'),)
        assert response.tool_calls[0].arguments == {"city": "NYC"}
        assert response.content is None
        assert response.finish_reason is FinishReason.TOOL_CALLS

    def test_parallel_calls_interleave_and_sort_by_index(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ToolCallDelta(index=1, id="call_b", name="second"),
            ToolCallDelta(index=0, id="call_a", name="first"),
            ToolCallDelta(index=1, arguments='{"n": 2}'),
            ToolCallDelta(index=0, arguments='{"n": 1}'),
            Finish(FinishReason.TOOL_CALLS),
        )
        calls = acc.tool_calls()
        assert [c.id for c in calls] == ["call_a", "call_b"]
        assert [c.arguments for c in calls] == [{"n": 1}, {"n": 2}]

    def test_malformed_arguments_become_empty_object(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ToolCallDelta(index=0, id="call_1", name="f", arguments='{"city": "NY'),
            Finish(FinishReason.TOOL_CALLS),
        )
        assert acc.tool_calls()[0].arguments_json == "{}"

    def test_stop_with_tool_calls_promoted(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ToolCallDelta(index=0, id="c", name="f", arguments="{}"),
            Finish(FinishReason.STOP),
        )
        assert acc.build_response().finish_reason is FinishReason.TOOL_CALLS

    def test_content_kept_alongside_tool_calls(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ContentDelta("Let me check."),
            ToolCallDelta(index=0, id="c", name="f"),
            Finish(FinishReason.TOOL_CALLS),
        )
        response = acc.build_response()
        assert response.content == "Let me check."
        assert len(response.tool_calls) == 1


# ---------------------------------------------------------------------------
# Termination and usage
# ---------------------------------------------------------------------------


class TestTermination:
    def test_done_after_finish_keeps_reason(self) -> None:
        acc = _feed(StreamAccumulator(), Finish(FinishReason.LENGTH), Done())
        assert acc.finish_reason is FinishReason.LENGTH

    def test_done_alone_means_stop(self) -> None:
        acc = _feed(StreamAccumulator(), ContentDelta("x"), Done())
        assert acc.terminal
        assert acc.finish_reason is FinishReason.STOP

    def test_content_after_terminal_ignored(self) -> None:
        acc = _feed(StreamAccumulator(), ContentDelta("a"), Finish(), ContentDelta("b"))
        assert acc.content == "a"

    def test_second_finish_ignored(self) -> None:
        acc = _feed(StreamAccumulator(), Finish(FinishReason.LENGTH), Finish(FinishReason.STOP))
        assert acc.finish_reason is FinishReason.LENGTH

    def test_usage_accepted_after_terminal(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            ContentDelta("Hi"),
            Finish(),
            UsageUpdate(prompt_tokens=5, completion_tokens=3),
            Done(),
        )
        usage = acc.build_response().usage
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (5, 3, 8)

    def test_partial_usage_updates_merge(self) -> None:
        acc = _feed(
            StreamAccumulator(),
            UsageUpdate(prompt_tokens=12, completion_tokens=1),
            UsageUpdate(completion_tokens=40),
        )
        assert (acc.prompt_tokens, acc.completion_tokens) == (12, 40)

    def test_raw_finish_reason_preserved(self) -> None:
        acc = _feed(StreamAccumulator(), Finish(FinishReason.ERROR, "weird_reason"))
        choice = acc.build_response().choices[0]
        assert choice.finish_reason is FinishReason.ERROR
        assert choice.raw_finish_reason == "weird_reason"

    def test_incomplete_stream_still_builds(self) -> None:
        response = _feed(StreamAccumulator(provider="openai"), ContentDelta("cut")).build_response()
        assert response.content == "cut"
        assert response.finish_reason is FinishReason.STOP
        assert response.provider == "openai"

    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(TypeError):
            StreamAccumulator().add(object())  # type: ignore[arg-type]
