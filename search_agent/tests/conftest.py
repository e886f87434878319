import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest
from langchain_core.messages import BaseMessage

from search_agent.domain.context.memory.checkpoint_store import InMemoryCheckpointStore
from search_agent.domain.llm.chat_model import ChatModel, ModelChunk, ToolCallRequest
from search_agent.domain.orchestration.core.main_agent import AgentOrchestrator
from search_agent.domain.streaming.event_encoder import decode_frame
from search_agent.domain.tool.builtin_tools import WEB_SEARCH_RESULT_SCHEMA, WEB_SEARCH_SCHEMA
from search_agent.domain.tool.tool_registry import ToolRegistry

SEARCH_URLS = ["https://news.example.com/ai-1", "https://news.example.com/ai-2"]

QUERY_SCHEMA = {
    "type": "object",
    "properties": {"query": {"type": "string"}},
    "required": ["query"]
}


def text_turn(*fragments: str) -> List[ModelChunk]:
    return [ModelChunk(text=fragment) for fragment in fragments]


def tool_turn(name: str, arguments: Dict[str, Any], *planning: str) -> List[ModelChunk]:
    chunks = [ModelChunk(text=fragment) for fragment in planning]
    chunks.append(ModelChunk(tool_calls=[ToolCallRequest(name=name, arguments=arguments)]))
    return chunks


class ScriptedChatModel(ChatModel):
    """Plays back one scripted list of chunks per model call"""

    def __init__(self, turns: List[List[ModelChunk]]):
        self.turns = list(turns)
        self.calls: List[List[BaseMessage]] = []

    async def stream(self, messages, tools):
        self.calls.append(list(messages))
        if not self.turns:
            raise AssertionError("Model called more often than scripted")
        for chunk in self.turns.pop(0):
            yield chunk


class AlwaysToolModel(ChatModel):
    """Requests a web search on every turn"""

    def __init__(self):
        self.calls = 0

    async def stream(self, messages, tools):
        self.calls += 1
        yield ModelChunk(text="Searching again")
        yield ModelChunk(tool_calls=[
            ToolCallRequest(name="web_search", arguments={"query": f"attempt {self.calls}"})
        ])


class FailingChatModel(ChatModel):
    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay

    async def stream(self, messages, tools):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        yield ModelChunk(text="never")


class FrameCollector:
    """Frame sink that records everything written to it"""

    def __init__(self):
        self.frames: List[str] = []

    async def __call__(self, frame: str) -> None:
        self.frames.append(frame)

    @property
    def events(self):
        return [decode_frame(frame) for frame in self.frames]

    @property
    def types(self) -> List[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str):
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def store():
    return InMemoryCheckpointStore()


@pytest.fixture
def sink():
    return FrameCollector()


@pytest.fixture
def registry():
    registry = ToolRegistry(default_timeout=1.0)

    async def fake_web_search(arguments):
        return {
            "query": arguments["query"],
            "results": [{"title": f"Result {i}", "url": url} for i, url in enumerate(SEARCH_URLS)]
        }

    async def slow_search(arguments):
        await asyncio.sleep(5)
        return {"query": arguments["query"]}

    registry.register(
        name="web_search",
        input_schema=WEB_SEARCH_SCHEMA,
        result_schema=WEB_SEARCH_RESULT_SCHEMA,
        executor=fake_web_search,
        description="Search the web",
        category="search",
        query_field="query",
        sources=lambda result: [item["url"] for item in result["results"]]
    )
    registry.register(
        name="slow_search",
        input_schema=QUERY_SCHEMA,
        executor=slow_search,
        timeout=0.05,
        query_field="query"
    )
    return registry


@pytest.fixture
def make_orchestrator(registry, store) -> Callable[..., AgentOrchestrator]:
    def factory(chat_model: ChatModel, **kwargs) -> AgentOrchestrator:
        kwargs.setdefault("tool_registry", registry)
        kwargs.setdefault("checkpoint_store", store)
        return AgentOrchestrator(chat_model=chat_model, **kwargs)
    return factory
