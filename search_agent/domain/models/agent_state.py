from typing import Dict, Any, List, Optional, FrozenSet
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Author of a turn"""
    USER = "user"
    ASSISTANT = "assistant"


class Stage(str, Enum):
    """Coarse progress marker of a tool-augmented answer"""
    SEARCHING = "searching"
    READING = "reading"
    WRITING = "writing"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER: List[Stage] = [Stage.SEARCHING, Stage.READING, Stage.WRITING]


class LoopState(str, Enum):
    """Agent loop states for a single user turn"""
    AWAITING_MODEL = "awaiting_model"
    CONTENT_ONLY = "content_only"
    TOOL_REQUESTED = "tool_requested"
    EXECUTING_TOOL = "executing_tool"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


LOOP_TRANSITIONS: Dict[LoopState, FrozenSet[LoopState]] = {
    LoopState.AWAITING_MODEL: frozenset({LoopState.CONTENT_ONLY, LoopState.TOOL_REQUESTED}),
    LoopState.TOOL_REQUESTED: frozenset({LoopState.EXECUTING_TOOL}),
    LoopState.EXECUTING_TOOL: frozenset({LoopState.AWAITING_MODEL}),
    LoopState.CONTENT_ONLY: frozenset({LoopState.FINALIZING}),
    LoopState.FINALIZING: frozenset({LoopState.DONE}),
    LoopState.DONE: frozenset(),
    LoopState.FAILED: frozenset(),
}


def transition(current: LoopState, target: LoopState) -> LoopState:
    """Validate a loop transition; any non-terminal state may fail"""

    if target == LoopState.FAILED and current not in (LoopState.DONE, LoopState.FAILED):
        return target
    if target not in LOOP_TRANSITIONS[current]:
        raise ValueError(f"Invalid loop transition {current.value} -> {target.value}")
    return target


class ToolInvocation(BaseModel):
    """One tool call requested by the model and its outcome"""
    call_id: str = Field(description="Identifier assigned by the model for this call")
    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    step: int = Field(default=1, description="Model/tool round-trip this call belongs to")
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = Field(None, description="Tool error kind when the call failed")
    error_detail: Optional[str] = None
    stage: Stage = Field(default=Stage.SEARCHING)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def completed(self) -> bool:
        return self.completed_at is not None

    @property
    def succeeded(self) -> bool:
        return self.completed and self.error is None

    def advance_stage(self, stage: Stage) -> None:
        """Move the stage forward; stages never go backwards"""
        if stage.rank < self.stage.rank:
            raise ValueError(f"Stage cannot move from {self.stage.value} back to {stage.value}")
        self.stage = stage

    def complete(
        self,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_detail: Optional[str] = None
    ) -> None:
        """Record the outcome once"""
        if self.completed:
            raise ValueError(f"Tool invocation {self.call_id} is already completed")
        self.result = result
        self.error = error
        self.error_detail = error_detail
        self.advance_stage(Stage.READING)
        self.completed_at = utcnow()


class Turn(BaseModel):
    """One immutable message of a conversation"""
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    sequence: int = Field(default=0, description="Monotonic position within the conversation")
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    """Ordered turns stored under a conversation id"""
    conversation_id: str
    turns: List[Turn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def append(self, *turns: Turn) -> "Conversation":
        """Append turns, assigning their sequence numbers"""
        for turn in turns:
            self.turns.append(turn.model_copy(update={"sequence": len(self.turns)}))
        self.updated_at = utcnow()
        return self

    def get_summary(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "turns": len(self.turns),
            "tool_invocations": sum(len(t.tool_invocations) for t in self.turns),
            "updated_at": self.updated_at.isoformat()
        }
