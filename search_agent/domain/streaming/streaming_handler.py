from typing import Awaitable, Callable, List, Optional
import structlog

from search_agent.application.streaming.schema.events import (
    BaseEvent, CheckpointEvent, ContentEvent, EndEvent, ErrorEvent,
    SearchErrorEvent, SearchResultsEvent, SearchStartEvent
)
from search_agent.domain.errors import EventEncodingError
from search_agent.domain.streaming.event_encoder import encode_event, is_encoding_failure

logger = structlog.get_logger(__name__)

FrameSink = Callable[[str], Awaitable[None]]


class TurnBuffer:
    """Holds the text fragments of one model turn until its outcome is known"""

    def __init__(self):
        self.fragments: List[str] = []

    def append(self, text: str) -> None:
        self.fragments.append(text)

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    def drain(self) -> List[str]:
        fragments, self.fragments = self.fragments, []
        return fragments


class StreamingHandler:
    """Turns agent loop transitions into ordered frames on one sink

    Model text is never forwarded as it arrives: it is buffered per model turn
    and either discarded (the turn requested a tool) or flushed as ``content``
    events in arrival order.
    """

    def __init__(self, sink: FrameSink, conversation_id: str):
        self.sink = sink
        self.conversation_id = conversation_id
        self.turn_buffer = TurnBuffer()
        self.events_sent = 0
        self.terminated = False
        self._open_tool_query: Optional[str] = None

    async def send_event(self, event: BaseEvent):
        """Encode and write one event"""

        if self.terminated:
            raise RuntimeError(f"Stream already terminated; refusing {event.type} event")
        frame = encode_event(event)
        await self.sink(frame)
        self.events_sent += 1
        if is_encoding_failure(frame):
            # The error frame written in its place ends the stream
            self.terminated = True
            raise EventEncodingError(f"Could not encode {event.type} event")
        if event.is_terminal:
            self.terminated = True

    async def send_checkpoint(self, checkpoint_id: str):
        await self.send_event(CheckpointEvent(checkpoint_id=checkpoint_id))

    async def send_search_start(self, query: str):
        """Open a tool lifecycle; only one may be open at a time"""

        if self._open_tool_query is not None:
            raise RuntimeError(f"Tool call '{self._open_tool_query}' is still in progress")
        self._open_tool_query = query
        await self.send_event(SearchStartEvent(query=query))

    async def send_search_results(self, urls: List[str]):
        self._close_tool_lifecycle()
        await self.send_event(SearchResultsEvent(urls=urls))

    async def send_search_error(self, error: str):
        self._close_tool_lifecycle()
        await self.send_event(SearchErrorEvent(error=error))

    async def send_end(self):
        await self.send_event(EndEvent())

    async def send_error(self, error: str):
        await self.send_event(ErrorEvent(error=error))

    def _close_tool_lifecycle(self):
        if self._open_tool_query is None:
            raise RuntimeError("No tool call in progress")
        self._open_tool_query = None

    def begin_model_turn(self):
        """Start buffering a fresh model turn"""

        if self.turn_buffer.fragments:
            logger.warning("Unflushed model text dropped", fragments=len(self.turn_buffer.fragments))
        self.turn_buffer.drain()

    def buffer_token(self, text: str):
        if text:
            self.turn_buffer.append(text)

    def discard_buffer(self) -> int:
        """Drop the planning text of a turn that requested a tool"""

        discarded = self.turn_buffer.drain()
        if discarded:
            logger.debug("Discarded planning text", fragments=len(discarded))
        return len(discarded)

    async def flush_buffer(self) -> str:
        """Emit buffered fragments as content events; returns the full text"""

        fragments = self.turn_buffer.drain()
        for fragment in fragments:
            await self.send_event(ContentEvent(content=fragment))
        return "".join(fragments)
