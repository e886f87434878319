from typing import Any, Awaitable, Callable, Dict, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import asyncio
import structlog

from search_agent.domain.streaming.stream_channel import StreamChannel
from search_agent.domain.streaming.streaming_handler import FrameSink

logger = structlog.get_logger(__name__)

Producer = Callable[[FrameSink], Awaitable[Any]]


@dataclass
class ActiveStream:
    conversation_id: str
    channel: StreamChannel
    task: "asyncio.Task[Any]"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StreamManager:
    """Tracks the running agent loop of each conversation

    At most one loop runs per conversation. Opening a new stream for a
    conversation cancels the loop already running for it.
    """

    def __init__(self, queue_size: int = 32):
        self.queue_size = queue_size
        self.active_streams: Dict[str, ActiveStream] = {}
        self._lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self.active_streams)

    async def open_stream(self, conversation_id: str, producer: Producer) -> StreamChannel:
        """Start ``producer`` in the background, writing into a fresh channel"""

        async with self._lock:
            previous = self.active_streams.pop(conversation_id, None)
            if previous is not None:
                logger.info("Superseding active stream", conversation_id=conversation_id)
                await self._stop(previous)

            channel = StreamChannel(maxsize=self.queue_size, name=conversation_id)
            task = asyncio.create_task(self._run(conversation_id, channel, producer))
            self.active_streams[conversation_id] = ActiveStream(
                conversation_id=conversation_id,
                channel=channel,
                task=task
            )

        logger.info("Stream opened", conversation_id=conversation_id, active_streams=self.active_count)
        return channel

    async def _run(self, conversation_id: str, channel: StreamChannel, producer: Producer):
        try:
            await producer(channel.send)
        except asyncio.CancelledError:
            logger.info("Stream cancelled", conversation_id=conversation_id, frames=channel.frames_sent)
            channel.abort()
            raise
        except Exception:
            # Nothing awaits this task, so the failure ends here
            logger.exception("Stream producer failed", conversation_id=conversation_id)
            channel.abort()
            return
        finally:
            self._forget(conversation_id, channel)

        await channel.close()
        logger.info("Stream finished", conversation_id=conversation_id, frames=channel.frames_sent)

    def _forget(self, conversation_id: str, channel: StreamChannel):
        current = self.active_streams.get(conversation_id)
        if current is not None and current.channel is channel:
            del self.active_streams[conversation_id]

    def cancel_stream(self, conversation_id: str, channel: Optional[StreamChannel] = None) -> bool:
        """Cancel the running loop of a conversation

        When ``channel`` is given only that particular stream is cancelled, so
        a reader that went away cannot cancel the loop that replaced its own.
        """

        entry = self.active_streams.get(conversation_id)
        if entry is None or (channel is not None and entry.channel is not channel):
            return False

        del self.active_streams[conversation_id]
        entry.channel.abort()
        entry.task.cancel()
        logger.info("Stream cancel requested", conversation_id=conversation_id)
        return True

    async def _stop(self, entry: ActiveStream):
        entry.channel.abort()
        entry.task.cancel()
        await asyncio.wait({entry.task})

    async def shutdown(self):
        """Cancel every running loop and wait for them to unwind"""

        async with self._lock:
            entries = list(self.active_streams.values())
            self.active_streams.clear()
            for entry in entries:
                entry.channel.abort()
                entry.task.cancel()
            if entries:
                await asyncio.wait({entry.task for entry in entries})

        logger.info("Stream manager shut down", cancelled=len(entries))
