"""Redis-backed checkpoint store."""

from typing import Any, Dict, Optional
import structlog
import redis.asyncio as aioredis
from redis.exceptions import WatchError

from search_agent.domain.context.memory.checkpoint_store import (
    DEFAULT_TTL_SECONDS, CheckpointStore, ConversationMutator
)
from search_agent.domain.models.agent_state import Conversation

logger = structlog.get_logger(__name__)

MAX_UPDATE_ATTEMPTS = 10


class RedisCheckpointStore(CheckpointStore):
    """Stores each conversation as one JSON string with a TTL

    ``update`` uses WATCH/MULTI so a concurrent writer to the same key forces
    a retry instead of a lost update.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        prefix: str = "chat",
        client: Optional[Any] = None
    ):
        super().__init__(ttl_seconds)
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
            logger.info("Redis checkpoint store connected", prefix=self.prefix)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _key(self, conversation_id: str) -> str:
        return f"{self.prefix}:{conversation_id}"

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        raw = await self.client.get(self._key(conversation_id))
        if raw is None:
            return None
        return Conversation.model_validate_json(raw)

    async def set(self, conversation: Conversation) -> None:
        await self.client.set(
            self._key(conversation.conversation_id),
            conversation.model_dump_json(),
            ex=self.ttl_seconds
        )

    async def delete(self, conversation_id: str) -> bool:
        return bool(await self.client.delete(self._key(conversation_id)))

    async def update(self, conversation_id: str, mutate: ConversationMutator) -> Conversation:
        key = self._key(conversation_id)

        async with self.client.pipeline(transaction=True) as pipe:
            for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = Conversation.model_validate_json(raw) if raw is not None else None
                    updated = mutate(current)

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), ex=self.ttl_seconds)
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.warning("Concurrent checkpoint write, retrying", key=key, attempt=attempt)
                    await pipe.reset()

        raise RuntimeError(f"Could not update {key} after {MAX_UPDATE_ATTEMPTS} attempts")

    async def get_stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "prefix": self.prefix}
