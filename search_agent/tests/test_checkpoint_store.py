import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import WatchError

from search_agent.domain.context.memory.checkpoint_store import InMemoryCheckpointStore
from search_agent.domain.models.agent_state import Conversation, Role, ToolInvocation, Turn
from search_agent.infrastructure.persistence.redis_checkpoint_store import RedisCheckpointStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def watch(self, key):
        pass

    async def get(self, key):
        return self.redis.data.get(key)

    def multi(self):
        self.queued = []

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))

    async def execute(self):
        if self.redis.conflicts:
            self.redis.conflicts -= 1
            raise WatchError("Watched variable changed")
        for key, value, ex in self.queued:
            await self.redis.set(key, value, ex=ex)

    async def reset(self):
        self.queued = []


class FakeRedis:
    def __init__(self, conflicts=0):
        self.data = {}
        self.expiry = {}
        self.conflicts = conflicts
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


def sample_turns():
    invocation = ToolInvocation(call_id="call_1", tool_name="web_search", arguments={"query": "ai"}, step=1)
    invocation.complete(result={"query": "ai", "results": [{"url": "https://a.example"}]})
    return [
        Turn(role=Role.USER, content="latest AI news"),
        Turn(role=Role.ASSISTANT, content="Here it is.", tool_invocations=[invocation]),
    ]


async def test_round_trip_preserves_turns(store):
    await store.append_turns("conv-1", *sample_turns())

    loaded = await store.get("conv-1")

    assert [turn.role for turn in loaded.turns] == [Role.USER, Role.ASSISTANT]
    assert [turn.sequence for turn in loaded.turns] == [0, 1]
    assert loaded.turns[1].tool_invocations[0].result["results"][0]["url"] == "https://a.example"
    assert loaded.turns == (await store.get("conv-1")).turns


async def test_get_returns_copies(store):
    await store.append_turns("conv-1", *sample_turns())

    first = await store.get("conv-1")
    first.turns.clear()

    assert len((await store.get("conv-1")).turns) == 2


async def test_missing_conversation(store):
    assert await store.get("nope") is None
    assert not await store.delete("nope")


async def test_ttl_expiry():
    clock = FakeClock()
    store = InMemoryCheckpointStore(ttl_seconds=60, clock=clock)
    await store.set(Conversation(conversation_id="conv-1"))

    clock.advance(59)
    assert await store.get("conv-1") is not None

    clock.advance(2)
    assert await store.get("conv-1") is None


async def test_clear_expired_and_stats():
    clock = FakeClock()
    store = InMemoryCheckpointStore(ttl_seconds=10, clock=clock)
    await store.set(Conversation(conversation_id="old"))
    clock.advance(20)
    await store.set(Conversation(conversation_id="new"))

    assert await store.get_stats() == {
        "backend": "memory", "total_keys": 2, "active_keys": 1, "expired_keys": 1
    }
    assert await store.clear_expired() == 1
    assert list(store.cache) == ["new"]


async def test_concurrent_appends_are_not_lost(store):
    async def append(i):
        await store.append_turns("conv-1", Turn(role=Role.USER, content=f"message {i}"))

    await asyncio.gather(*(append(i) for i in range(20)))

    conversation = await store.get("conv-1")
    assert len(conversation.turns) == 20
    assert [turn.sequence for turn in conversation.turns] == list(range(20))


async def test_delete(store):
    await store.append_turns("conv-1", *sample_turns())

    assert await store.delete("conv-1")
    assert await store.get("conv-1") is None


async def test_key_locks_are_released(store):
    await asyncio.gather(*(
        store.append_turns(f"conv-{i % 3}", Turn(role=Role.USER, content=str(i))) for i in range(9)
    ))
    await store.delete("conv-0")

    assert len(store._key_locks) == 0


async def test_expired_keys_leave_no_locks():
    clock = FakeClock()
    store = InMemoryCheckpointStore(ttl_seconds=10, clock=clock)
    for i in range(5):
        await store.append_turns(f"conv-{i}", Turn(role=Role.USER, content="hi"))
    clock.advance(20)

    assert await store.clear_expired() == 5
    assert store.cache == {}
    assert len(store._key_locks) == 0


async def test_redis_round_trip_uses_prefix_and_ttl():
    redis = FakeRedis()
    store = RedisCheckpointStore(ttl_seconds=120, client=redis)

    await store.append_turns("conv-1", *sample_turns())

    assert list(redis.data) == ["chat:conv-1"]
    assert redis.expiry["chat:conv-1"] == 120
    loaded = await store.get("conv-1")
    assert [turn.content for turn in loaded.turns] == ["latest AI news", "Here it is."]

    assert await store.delete("conv-1")
    assert await store.get("conv-1") is None

    await store.close()
    assert redis.closed


async def test_redis_update_retries_on_conflict():
    redis = FakeRedis(conflicts=2)
    store = RedisCheckpointStore(client=redis)

    conversation = await store.append_turns("conv-1", Turn(role=Role.USER, content="hi"))

    assert redis.conflicts == 0
    assert len(conversation.turns) == 1
    assert len((await store.get("conv-1")).turns) == 1


async def test_redis_update_gives_up():
    redis = FakeRedis(conflicts=100)
    store = RedisCheckpointStore(client=redis)

    with pytest.raises(RuntimeError):
        await store.append_turns("conv-1", Turn(role=Role.USER, content="hi"))
