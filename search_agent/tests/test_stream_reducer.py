import pytest

from search_agent.application.streaming.schema.events import (
    CheckpointEvent, ContentEvent, EndEvent, ErrorEvent,
    SearchErrorEvent, SearchResultsEvent, SearchStartEvent
)
from search_agent.client.frame_decoder import FrameDecoder
from search_agent.client.stream_reducer import (
    DEFAULT_ERROR_MESSAGE, DisplayState, DisplayStatus, StreamReducer,
    describe_error, fold, parse_frame, reduce
)
from search_agent.domain.models.agent_state import Stage
from search_agent.domain.streaming.event_encoder import encode_event

SEARCH_SEQUENCE = [
    CheckpointEvent(checkpoint_id="conv-1"),
    SearchStartEvent(query="latest AI news"),
    SearchResultsEvent(urls=["https://a.example", "https://b.example"]),
    SearchStartEvent(query="more AI news"),
    SearchResultsEvent(urls=["https://b.example", "https://c.example"]),
    ContentEvent(content="Here "),
    ContentEvent(content="you go."),
    EndEvent(),
]


def test_fold_search_sequence():
    state = fold(SEARCH_SEQUENCE)

    assert state.content == "Here you go."
    assert state.stages == (Stage.SEARCHING, Stage.READING, Stage.WRITING)
    assert state.query == "more AI news"
    assert state.urls == ("https://a.example", "https://b.example", "https://c.example")
    assert state.checkpoint_id == "conv-1"
    assert state.status == DisplayStatus.COMPLETE


def test_replay_is_deterministic():
    assert fold(SEARCH_SEQUENCE) == fold(SEARCH_SEQUENCE)
    assert fold(SEARCH_SEQUENCE[3:], initial=fold(SEARCH_SEQUENCE[:3])) == fold(SEARCH_SEQUENCE)


def test_reduce_does_not_mutate_input():
    initial = DisplayState()

    reduce(initial, ContentEvent(content="x"))

    assert initial == DisplayState()


def test_stages_only_grow():
    state = DisplayState()
    previous = ()
    for event in SEARCH_SEQUENCE:
        state = reduce(state, event)
        assert state.stages[:len(previous)] == previous
        previous = state.stages

    assert {Stage.SEARCHING, Stage.READING} <= set(state.stages)


def test_search_error_still_reaches_reading():
    state = fold([SearchStartEvent(query="q"), SearchErrorEvent(error="timeout"), ContentEvent(content="ok")])

    assert state.stages == (Stage.SEARCHING, Stage.READING)
    assert state.urls == ()
    assert state.status == DisplayStatus.LOADING


def test_error_clears_content_and_stops_accumulation():
    state = fold([
        ContentEvent(content="partial"),
        ErrorEvent(error="step_limit_exceeded"),
        ContentEvent(content="ignored"),
        EndEvent(),
    ])

    assert state.content == ""
    assert state.status == DisplayStatus.ERROR
    assert state.error == "step_limit_exceeded"
    assert "too many tool calls" in state.error_message


def test_events_after_end_are_ignored():
    state = fold([ContentEvent(content="done"), EndEvent(), ContentEvent(content="extra")])

    assert state.content == "done"


def test_describe_error_falls_back():
    assert describe_error("something_new") == DEFAULT_ERROR_MESSAGE
    assert describe_error(None) == DEFAULT_ERROR_MESSAGE


@pytest.mark.parametrize("payload", [
    "{not json",
    '{"type": "content"}',
    '{"type": "mystery", "data": 1}',
    '{"type": "content", "data": "legacy shape"}',
])
def test_parse_frame_skips_malformed(payload):
    assert parse_frame(payload) is None


def test_reducer_tolerates_malformed_frames():
    reducer = StreamReducer()
    stream = (
        encode_event(ContentEvent(content="Hello"))
        + "data: {broken\n\n"
        + encode_event(ContentEvent(content=" world"))
        + encode_event(EndEvent())
    ).encode()

    reducer.feed(stream)

    assert reducer.skipped_frames == 1
    assert reducer.finish().content == "Hello world"
    assert reducer.state.status == DisplayStatus.COMPLETE


def test_partial_chunks_across_frame_and_character_boundaries():
    stream = (
        encode_event(CheckpointEvent(checkpoint_id="conv-1"))
        + encode_event(ContentEvent(content="Grüße, 世界"))
        + encode_event(EndEvent())
    ).encode("utf-8")

    whole = StreamReducer()
    whole.feed(stream)

    chunked = StreamReducer()
    for i in range(len(stream)):
        chunked.feed(stream[i:i + 1])

    assert chunked.finish() == whole.finish()
    assert chunked.state.content == "Grüße, 世界"


def test_dropped_connection_is_incomplete():
    reducer = StreamReducer()
    reducer.feed(encode_event(SearchStartEvent(query="q")).encode())
    reducer.feed(b'data: {"type":"content","con')

    state = reducer.finish()

    assert state.status == DisplayStatus.INCOMPLETE
    assert state.stages == (Stage.SEARCHING,)


def test_finish_keeps_terminal_state():
    reducer = StreamReducer()
    reducer.feed(encode_event(EndEvent()).encode())

    assert reducer.finish().status == DisplayStatus.COMPLETE


def test_frame_decoder_handles_crlf_and_comments():
    decoder = FrameDecoder()

    payloads = decoder.feed(b': keep-alive\r\n\r\ndata: {"type":"end"}\r')
    payloads += decoder.feed(b"\n\r\n")

    assert payloads == ['{"type":"end"}']
    assert decoder.pending == ""


def test_frame_decoder_joins_multiline_data():
    decoder = FrameDecoder()

    assert decoder.feed(b'data: {"type":\ndata: "end"}\n\n') == ['{"type":\n"end"}']


def test_frame_decoder_flushes_unterminated_frame():
    decoder = FrameDecoder()

    assert decoder.feed(b'data: {"type":"end"}') == []
    assert decoder.flush() == ['{"type":"end"}']
