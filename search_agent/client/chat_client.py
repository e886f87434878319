from typing import AsyncIterator, Optional, Tuple
import httpx
import structlog

from search_agent.application.streaming.schema.events import BaseEvent, CheckpointEvent
from search_agent.client.stream_reducer import DisplayState, StreamReducer

logger = structlog.get_logger(__name__)


class ChatStreamClient:
    """Streams chat turns from the search agent and keeps the conversation id

    The first turn starts a conversation; the ``checkpoint`` event it receives
    is remembered and sent with every later turn until ``reset`` or ``clear``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        checkpoint_id: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.checkpoint_id = checkpoint_id
        self.last_state = DisplayState()
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport
        )

    async def __aenter__(self) -> "ChatStreamClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def reset(self) -> None:
        """Start a new conversation on the next turn"""
        self.checkpoint_id = None

    async def stream(self, message: str) -> AsyncIterator[Tuple[BaseEvent, DisplayState]]:
        """Send one message and yield each event with the display state after it

        A dropped connection ends the iteration with the state marked
        incomplete; it is available as ``last_state`` afterwards.
        """

        reducer = StreamReducer()
        self.last_state = reducer.state
        body = {"message": message}
        if self.checkpoint_id:
            body["checkpoint_id"] = self.checkpoint_id

        try:
            async with self._client.stream("POST", "/chat_stream", json=body) as response:
                if response.status_code != 200:
                    await response.aread()
                    response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    for event in reducer.feed(chunk):
                        if isinstance(event, CheckpointEvent):
                            self.checkpoint_id = event.checkpoint_id
                        self.last_state = reducer.state
                        yield event, reducer.state
        except httpx.TransportError as e:
            logger.warning("Chat stream interrupted", error=str(e), checkpoint_id=self.checkpoint_id)
        finally:
            self.last_state = reducer.finish()

    async def send(self, message: str) -> DisplayState:
        """Send one message and return the final display state"""

        async for _ in self.stream(message):
            pass
        return self.last_state

    async def clear(self) -> bool:
        """Delete the current conversation on the server"""

        if not self.checkpoint_id:
            return False
        response = await self._client.post("/clear", json={"checkpoint_id": self.checkpoint_id})
        response.raise_for_status()
        self.checkpoint_id = None
        return bool(response.json().get("cleared"))

    async def history(self) -> Optional[dict]:
        """Stored turns of the current conversation, if any"""

        if not self.checkpoint_id:
            return None
        response = await self._client.get(f"/conversations/{self.checkpoint_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
