from typing import AsyncIterator, Optional
import asyncio
import structlog

from search_agent.domain.errors import TransportError

logger = structlog.get_logger(__name__)

_EOF = object()


class StreamChannel:
    """Bounded, ordered frame channel between one producer and one reader

    ``send`` waits for queue space instead of dropping frames. ``close`` ends
    the stream after every queued frame has been read; ``abort`` discards
    whatever is queued and wakes the reader immediately.
    """

    def __init__(self, maxsize: int = 32, name: Optional[str] = None):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.name = name
        self._queue: "asyncio.Queue[object]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._aborted = False
        self.frames_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def aborted(self) -> bool:
        return self._aborted

    async def send(self, frame: str) -> None:
        """Queue one frame, waiting while the reader is behind"""

        if self._closed:
            raise TransportError(f"Stream {self.name or ''} is closed".strip())
        await self._queue.put(frame)
        self.frames_sent += 1

    async def close(self) -> None:
        """Signal end of stream after the frames already queued"""

        if self._closed:
            return
        self._closed = True
        await self._queue.put(_EOF)

    def abort(self) -> None:
        """Stop the stream now; queued frames are dropped"""

        if self._aborted:
            return
        self._closed = True
        self._aborted = True
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
                dropped += 1
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_EOF)
        if dropped:
            logger.debug("Dropped queued frames on abort", stream=self.name, dropped=dropped)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is _EOF:
                return
            yield frame
