from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Callable
import asyncio
import weakref
from datetime import datetime, timedelta, timezone

from search_agent.domain.models.agent_state import Conversation, Turn

DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 7

ConversationMutator = Callable[[Optional[Conversation]], Conversation]


class CheckpointStore(ABC):
    """Conversation history keyed by conversation id, with expiry

    Writes to one key are serialized through ``update``; reads may observe
    the last completed write only.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        """Load a conversation, or None when absent or expired"""
        pass

    @abstractmethod
    async def set(self, conversation: Conversation) -> None:
        """Store a conversation and restart its expiry window"""
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        pass

    @abstractmethod
    async def update(self, conversation_id: str, mutate: ConversationMutator) -> Conversation:
        """Atomic read-modify-write of one conversation"""
        pass

    async def append_turns(self, conversation_id: str, *turns: Turn) -> Conversation:
        """Append turns to a conversation, creating it when needed"""

        def mutate(current: Optional[Conversation]) -> Conversation:
            conversation = current or Conversation(conversation_id=conversation_id)
            return conversation.append(*turns)

        return await self.update(conversation_id, mutate)

    async def close(self) -> None:
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store with TTL support

    Values are kept serialized so callers never share mutable state with the
    store.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        super().__init__(ttl_seconds)
        self.cache: Dict[str, Dict[str, Any]] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Entries vanish once no coroutine holds or awaits the lock
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._key_locks.get(conversation_id)
        if lock is None:
            lock = self._key_locks[conversation_id] = asyncio.Lock()
        return lock

    def _read(self, conversation_id: str) -> Optional[Conversation]:
        entry = self.cache.get(conversation_id)
        if entry is None:
            return None

        # Check if expired
        if self._clock() > entry["expires_at"]:
            del self.cache[conversation_id]
            return None

        return Conversation.model_validate_json(entry["value"])

    def _write(self, conversation: Conversation) -> None:
        self.cache[conversation.conversation_id] = {
            "value": conversation.model_dump_json(),
            "expires_at": self._clock() + timedelta(seconds=self.ttl_seconds)
        }

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._read(conversation_id)

    async def set(self, conversation: Conversation) -> None:
        async with self._lock_for(conversation.conversation_id):
            self._write(conversation)

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock_for(conversation_id):
            return self.cache.pop(conversation_id, None) is not None

    async def update(self, conversation_id: str, mutate: ConversationMutator) -> Conversation:
        async with self._lock_for(conversation_id):
            current = self._read(conversation_id)
            updated = mutate(current)
            self._write(updated)
            return updated

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        now = self._clock()
        expired_keys = [
            key for key, entry in self.cache.items()
            if now > entry["expires_at"]
        ]

        for key in expired_keys:
            del self.cache[key]

        return len(expired_keys)

    async def get_stats(self) -> Dict[str, Any]:
        """Get store statistics"""

        now = self._clock()
        active_count = sum(
            1 for entry in self.cache.values()
            if now <= entry["expires_at"]
        )

        return {
            "backend": "memory",
            "total_keys": len(self.cache),
            "active_keys": active_count,
            "expired_keys": len(self.cache) - active_count
        }
