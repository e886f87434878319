"""
Client-side fold of the chat event stream into display state.

``reduce`` is a pure function over immutable ``DisplayState`` values, so
replaying the same events always produces the same state. ``StreamReducer``
adds the byte-level framing and the end-of-connection handling on top.
"""

from typing import Iterable, List, Optional, Tuple
from dataclasses import dataclass, replace
from enum import Enum
import pydantic
import structlog

from search_agent.application.streaming.schema.events import (
    BaseEvent, CheckpointEvent, ContentEvent, EndEvent, ErrorEvent,
    SearchErrorEvent, SearchResultsEvent, SearchStartEvent
)
from search_agent.client.frame_decoder import FrameDecoder
from search_agent.domain.models.agent_state import Stage
from search_agent.domain.streaming.event_encoder import decode_event

logger = structlog.get_logger(__name__)

ERROR_MESSAGES = {
    "step_limit_exceeded": "The assistant needed too many tool calls to answer. Please try rephrasing.",
    "upstream_model_error": "The language model is unavailable right now. Please try again.",
    "checkpoint_store_error": "The conversation could not be saved. Please try again.",
    "event_encoding_failed": "The server sent a response that could not be displayed.",
    "internal_error": "Something went wrong while answering. Please try again.",
}
DEFAULT_ERROR_MESSAGE = "Sorry, I encountered an error. Please try again."


def describe_error(code: Optional[str]) -> str:
    return ERROR_MESSAGES.get(code or "", DEFAULT_ERROR_MESSAGE)


class DisplayStatus(str, Enum):
    LOADING = "loading"
    COMPLETE = "complete"
    ERROR = "error"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class DisplayState:
    """What the UI shows for the assistant turn being streamed"""
    content: str = ""
    stages: Tuple[Stage, ...] = ()
    query: str = ""
    urls: Tuple[str, ...] = ()
    checkpoint_id: Optional[str] = None
    status: DisplayStatus = DisplayStatus.LOADING
    error: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.status == DisplayStatus.LOADING

    @property
    def error_message(self) -> Optional[str]:
        if self.status != DisplayStatus.ERROR:
            return None
        return describe_error(self.error)


def _add_stage(stages: Tuple[Stage, ...], stage: Stage) -> Tuple[Stage, ...]:
    return stages if stage in stages else stages + (stage,)


def _merge_urls(urls: Tuple[str, ...], new_urls: Iterable[str]) -> Tuple[str, ...]:
    merged = list(urls)
    for url in new_urls:
        if url not in merged:
            merged.append(url)
    return tuple(merged)


def reduce(state: DisplayState, event: BaseEvent) -> DisplayState:
    """Apply one event to the display state"""

    if isinstance(event, CheckpointEvent):
        # The id stays valid after the turn ends
        return replace(state, checkpoint_id=event.checkpoint_id)

    if not state.is_loading:
        return state

    if isinstance(event, ContentEvent):
        return replace(state, content=state.content + event.content)
    if isinstance(event, SearchStartEvent):
        return replace(state, stages=_add_stage(state.stages, Stage.SEARCHING), query=event.query)
    if isinstance(event, SearchResultsEvent):
        return replace(
            state,
            stages=_add_stage(state.stages, Stage.READING),
            urls=_merge_urls(state.urls, event.urls)
        )
    if isinstance(event, SearchErrorEvent):
        return replace(state, stages=_add_stage(state.stages, Stage.READING))
    if isinstance(event, EndEvent):
        return replace(state, stages=_add_stage(state.stages, Stage.WRITING), status=DisplayStatus.COMPLETE)
    if isinstance(event, ErrorEvent):
        return replace(state, content="", status=DisplayStatus.ERROR, error=event.error)

    logger.warning("Unhandled stream event", event_type=event.type)
    return state


def fold(events: Iterable[BaseEvent], initial: Optional[DisplayState] = None) -> DisplayState:
    state = initial or DisplayState()
    for event in events:
        state = reduce(state, event)
    return state


def parse_frame(payload: str) -> Optional[BaseEvent]:
    """Decode one frame payload; malformed or unknown frames yield None"""

    try:
        return decode_event(payload)
    except pydantic.ValidationError as e:
        logger.warning("Skipping malformed stream frame", payload=payload[:200], errors=e.error_count())
        return None


class StreamReducer:
    """Feeds raw response bytes through the decoder and the fold"""

    def __init__(self, initial: Optional[DisplayState] = None):
        self.decoder = FrameDecoder()
        self.state = initial or DisplayState()
        self.skipped_frames = 0

    def apply(self, event: BaseEvent) -> DisplayState:
        self.state = reduce(self.state, event)
        return self.state

    def feed(self, chunk: bytes) -> List[BaseEvent]:
        """Consume a network chunk; returns the events it completed"""

        return self._apply_payloads(self.decoder.feed(chunk))

    def finish(self) -> DisplayState:
        """Connection closed: settle any trailing frame, then never stay loading"""

        self._apply_payloads(self.decoder.flush())
        if self.state.is_loading:
            logger.info("Stream ended without a terminal event")
            self.state = replace(self.state, status=DisplayStatus.INCOMPLETE)
        return self.state

    def _apply_payloads(self, payloads: List[str]) -> List[BaseEvent]:
        events = []
        for payload in payloads:
            event = parse_frame(payload)
            if event is None:
                self.skipped_frames += 1
                continue
            self.apply(event)
            events.append(event)
        return events
