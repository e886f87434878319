from typing import Annotated, List, Literal, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from enum import Enum


class EventType(str, Enum):
    """Server-sent event types"""
    CHECKPOINT = "checkpoint"
    CONTENT = "content"
    SEARCH_START = "search_start"
    SEARCH_RESULTS = "search_results"
    SEARCH_ERROR = "search_error"
    END = "end"
    ERROR = "error"


class BaseEvent(BaseModel):
    """Base event model for all stream frames"""
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES


class CheckpointEvent(BaseEvent):
    """Conversation id handed to the client for later resumption"""
    type: Literal["checkpoint"] = "checkpoint"
    checkpoint_id: str = Field(min_length=1)


class ContentEvent(BaseEvent):
    """Fragment of the user-visible answer"""
    type: Literal["content"] = "content"
    content: str = Field(min_length=1)


class SearchStartEvent(BaseEvent):
    type: Literal["search_start"] = "search_start"
    query: str


class SearchResultsEvent(BaseEvent):
    type: Literal["search_results"] = "search_results"
    urls: List[str] = Field(default_factory=list)


class SearchErrorEvent(BaseEvent):
    type: Literal["search_error"] = "search_error"
    error: str


class EndEvent(BaseEvent):
    """Terminal, success"""
    type: Literal["end"] = "end"


class ErrorEvent(BaseEvent):
    """Terminal, failure"""
    type: Literal["error"] = "error"
    error: str


StreamEvent = Annotated[
    Union[
        CheckpointEvent,
        ContentEvent,
        SearchStartEvent,
        SearchResultsEvent,
        SearchErrorEvent,
        EndEvent,
        ErrorEvent,
    ],
    Field(discriminator="type")
]

stream_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)

TERMINAL_EVENT_TYPES = frozenset({EventType.END.value, EventType.ERROR.value})


class ChatRequest(BaseModel):
    """Request body of the chat stream endpoint"""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    message: str = Field(min_length=1, max_length=8000)
    checkpoint_id: Union[str, None] = Field(
        default=None, min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._:\-]+$"
    )


class ClearRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    checkpoint_id: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._:\-]+$")
