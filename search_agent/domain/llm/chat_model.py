from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4
from pydantic import BaseModel, Field
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessageChunk, BaseMessage
import structlog

logger = structlog.get_logger(__name__)


class ToolCallRequest(BaseModel):
    """The model asked for a tool to be executed"""
    call_id: str = Field(default_factory=lambda: f"call_{uuid4().hex[:12]}")
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)

    def to_langchain(self) -> Dict[str, Any]:
        return {"name": self.name, "args": self.arguments, "id": self.call_id, "type": "tool_call"}


class ModelChunk(BaseModel):
    """One piece of a streamed model turn: text, tool requests, or both"""
    text: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)


class ChatModel(ABC):
    """A language model that streams one turn at a time"""

    @abstractmethod
    def stream(
        self,
        messages: List[BaseMessage],
        tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelChunk]:
        """Stream the next model turn for the given history"""
        pass


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


class LangChainChatModel(ChatModel):
    """Adapts any LangChain chat model with tool binding support"""

    def __init__(self, llm: BaseChatModel):
        self.llm = llm

    async def stream(
        self,
        messages: List[BaseMessage],
        tools: List[Dict[str, Any]]
    ) -> AsyncIterator[ModelChunk]:
        runnable = self.llm.bind_tools(tools) if tools else self.llm
        aggregate: Optional[AIMessageChunk] = None

        async for chunk in runnable.astream(messages):
            text = _chunk_text(chunk.content)
            if text:
                yield ModelChunk(text=text)
            if isinstance(chunk, AIMessageChunk):
                aggregate = chunk if aggregate is None else aggregate + chunk

        if aggregate is not None and aggregate.tool_calls:
            yield ModelChunk(tool_calls=[
                ToolCallRequest(
                    call_id=call.get("id") or f"call_{uuid4().hex[:12]}",
                    name=call["name"],
                    arguments=call.get("args") or {}
                )
                for call in aggregate.tool_calls
            ])


def build_chat_model(
    api_key: str,
    model_name: str,
    temperature: float = 0.7,
    max_output_tokens: int = 2048,
    timeout: Optional[float] = None
) -> ChatModel:
    """Create the production model client"""

    from langchain_google_genai import ChatGoogleGenerativeAI

    llm = ChatGoogleGenerativeAI(
        google_api_key=api_key,
        model=model_name,
        temperature=temperature,
        max_output_tokens=max_output_tokens,
        timeout=timeout,
    )
    logger.info("Chat model initialized", model=model_name)
    return LangChainChatModel(llm)
