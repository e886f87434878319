from typing import TypedDict, List, Dict, Any, Optional, Literal
from dataclasses import dataclass, field
from langgraph.graph import StateGraph, END
from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
import asyncio
import time
import structlog

from search_agent.domain.context.context_manager import ContextManager, tool_message_content
from search_agent.domain.context.memory.checkpoint_store import CheckpointStore
from search_agent.domain.errors import (
    SearchAgentError, StepLimitError, TransportError, UpstreamModelError
)
from search_agent.domain.llm.chat_model import ChatModel, ToolCallRequest
from search_agent.domain.models.agent_state import (
    LoopState, Role, Stage, ToolInvocation, Turn, transition
)
from search_agent.domain.streaming.streaming_handler import FrameSink, StreamingHandler
from search_agent.domain.tool.tool_registry import ToolRegistry
from search_agent.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TOOL_STEPS = 5
CHECKPOINT_STORE_ERROR = "checkpoint_store_error"
INTERNAL_ERROR = "internal_error"


class LoopGraphState(TypedDict):
    """State for the agent loop graph"""
    conversation_id: str
    messages: List[BaseMessage]
    step: int
    pending_calls: List[ToolCallRequest]
    invocations: List[ToolInvocation]
    answer: str
    status: LoopState


@dataclass
class TurnResult:
    """Outcome of one user turn"""
    conversation_id: str
    status: LoopState
    answer: str = ""
    invocations: List[ToolInvocation] = field(default_factory=list)
    error: Optional[str] = None
    events_sent: int = 0


def route_after_model(state: LoopGraphState) -> Literal["tools", "finalize"]:
    """Route a finished model turn"""

    if state["status"] == LoopState.TOOL_REQUESTED:
        return "tools"
    return "finalize"


class AgentOrchestrator:
    """Drives the model/tool alternation for one user turn using LangGraph"""

    def __init__(
        self,
        chat_model: ChatModel,
        tool_registry: ToolRegistry,
        checkpoint_store: CheckpointStore,
        context_manager: Optional[ContextManager] = None,
        max_tool_steps: int = DEFAULT_MAX_TOOL_STEPS,
        model_timeout: float = 60.0
    ):
        self.chat_model = chat_model
        self.tool_registry = tool_registry
        self.checkpoint_store = checkpoint_store
        self.context_manager = context_manager or ContextManager()
        self.max_tool_steps = max_tool_steps
        self.model_timeout = model_timeout
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the model/tool loop graph"""

        workflow = StateGraph(LoopGraphState)

        workflow.add_node("model", self.model_node)
        workflow.add_node("tools", self.tool_node)
        workflow.add_node("finalize", self.finalize_node)

        workflow.set_entry_point("model")

        workflow.add_conditional_edges(
            "model",
            route_after_model,
            {
                "tools": "tools",
                "finalize": "finalize"
            }
        )
        workflow.add_edge("tools", "model")
        workflow.add_edge("finalize", END)

        return workflow.compile()

    def _advance(self, state: LoopGraphState, target: LoopState) -> LoopState:
        new_status = transition(state["status"], target)
        agent_logger.log_loop_transition(
            conversation_id=state["conversation_id"],
            from_state=state["status"].value,
            to_state=new_status.value,
            step=state["step"]
        )
        return new_status

    async def model_node(self, state: LoopGraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Ask the model for its next action and gate its text"""

        handler: StreamingHandler = config["configurable"]["streaming_handler"]
        tool_calls = await self._run_model_turn(state, handler)

        if tool_calls:
            discarded = handler.discard_buffer()
            logger.info(
                "Model requested tools",
                tools=[call.name for call in tool_calls],
                step=state["step"],
                discarded_fragments=discarded
            )
            if state["step"] >= self.max_tool_steps:
                raise StepLimitError(self.max_tool_steps)

            request = AIMessage(content="", tool_calls=[call.to_langchain() for call in tool_calls])
            return {
                "messages": state["messages"] + [request],
                "pending_calls": tool_calls,
                "status": self._advance(state, LoopState.TOOL_REQUESTED)
            }

        answer = await handler.flush_buffer()
        return {
            "messages": state["messages"] + [AIMessage(content=answer)],
            "pending_calls": [],
            "answer": answer,
            "status": self._advance(state, LoopState.CONTENT_ONLY)
        }

    async def tool_node(self, state: LoopGraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Execute requested tools sequentially, one lifecycle at a time"""

        handler: StreamingHandler = config["configurable"]["streaming_handler"]
        status = self._advance(state, LoopState.EXECUTING_TOOL)
        step = state["step"] + 1
        messages = list(state["messages"])
        invocations = list(state["invocations"])

        for call in state["pending_calls"]:
            invocation = ToolInvocation(
                call_id=call.call_id,
                tool_name=call.name,
                arguments=call.arguments,
                step=step
            )

            # Progress is visible before any tool latency elapses
            await handler.send_search_start(self.tool_registry.describe_query(call.name, call.arguments))
            outcome = await self.tool_registry.execute(call.name, call.arguments)

            if outcome.ok:
                invocation.complete(result=outcome.result)
                await handler.send_search_results(self.tool_registry.extract_sources(call.name, outcome.result))
            else:
                invocation.complete(error=outcome.kind.value, error_detail=outcome.detail)
                logger.warning("Tool call failed", tool_name=call.name, kind=outcome.kind.value, detail=outcome.detail)
                metrics.increment_counter("tool_errors", tags={"kind": outcome.kind.value})
                await handler.send_search_error(outcome.kind.value)

            messages.append(ToolMessage(
                content=tool_message_content(invocation),
                tool_call_id=call.call_id,
                name=call.name
            ))
            invocations.append(invocation)

        return {
            "messages": messages,
            "invocations": invocations,
            "pending_calls": [],
            "step": step,
            "status": transition(status, LoopState.AWAITING_MODEL)
        }

    async def finalize_node(self, state: LoopGraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Persist the completed exchange"""

        status = self._advance(state, LoopState.FINALIZING)
        user_text: str = config["configurable"]["user_text"]

        invocations = [inv.model_copy(deep=True) for inv in state["invocations"]]
        for invocation in invocations:
            invocation.advance_stage(Stage.WRITING)

        try:
            await self.checkpoint_store.append_turns(
                state["conversation_id"],
                Turn(role=Role.USER, content=user_text),
                Turn(role=Role.ASSISTANT, content=state["answer"], tool_invocations=invocations)
            )
        except Exception as e:
            raise SearchAgentError(f"Failed to persist conversation: {e}", code=CHECKPOINT_STORE_ERROR) from e

        logger.info(
            "Persisted turn",
            tool_calls=len(invocations),
            failed_tool_calls=sum(1 for inv in invocations if not inv.succeeded)
        )
        return {"invocations": invocations, "status": transition(status, LoopState.DONE)}

    async def _run_model_turn(self, state: LoopGraphState, handler: StreamingHandler) -> List[ToolCallRequest]:
        """Stream one model turn into the handler's buffer under the model timeout"""

        handler.begin_model_turn()
        tools = self.tool_registry.to_tool_definitions()

        async def collect() -> List[ToolCallRequest]:
            calls: List[ToolCallRequest] = []
            async for chunk in self.chat_model.stream(state["messages"], tools):
                handler.buffer_token(chunk.text)
                calls.extend(chunk.tool_calls)
            return calls

        started = time.perf_counter()
        try:
            tool_calls = await asyncio.wait_for(collect(), timeout=self.model_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamModelError(f"Model call timed out after {self.model_timeout}s") from e
        except SearchAgentError:
            raise
        except Exception as e:
            raise UpstreamModelError(f"Model call failed: {e}") from e

        duration_ms = (time.perf_counter() - started) * 1000
        metrics.record_latency("model_call", duration_ms)
        agent_logger.log_model_call(
            conversation_id=state["conversation_id"],
            step=state["step"],
            duration_ms=duration_ms,
            tool_calls=len(tool_calls),
            text_fragments=len(handler.turn_buffer.fragments),
            discarded=bool(tool_calls)
        )
        return tool_calls

    async def run_turn(
        self,
        conversation_id: str,
        user_text: str,
        sink: FrameSink,
        new_conversation: bool = False
    ) -> TurnResult:
        """Run one user turn, writing every event frame to ``sink``

        Cancellation propagates unchanged and leaves the stored history
        untouched.
        """

        handler = StreamingHandler(sink, conversation_id)
        structlog.contextvars.bind_contextvars(conversation_id=conversation_id)
        logger.info("Processing message", new_conversation=new_conversation, message_length=len(user_text))

        try:
            if new_conversation:
                await handler.send_checkpoint(conversation_id)

            history = await self._load_history(conversation_id)
            initial_state: LoopGraphState = {
                "conversation_id": conversation_id,
                "messages": self.context_manager.build_messages(history, user_text),
                "step": 0,
                "pending_calls": [],
                "invocations": [],
                "answer": "",
                "status": LoopState.AWAITING_MODEL
            }

            final_state = await self.workflow.ainvoke(
                initial_state,
                config={
                    "configurable": {
                        "streaming_handler": handler,
                        "user_text": user_text
                    },
                    "recursion_limit": 2 * self.max_tool_steps + 5
                }
            )

            await handler.send_end()
            metrics.increment_counter("turns_completed")
            logger.info("Turn completed", steps=final_state["step"], events=handler.events_sent)
            return TurnResult(
                conversation_id=conversation_id,
                status=final_state["status"],
                answer=final_state["answer"],
                invocations=final_state["invocations"],
                events_sent=handler.events_sent
            )

        except asyncio.CancelledError:
            logger.info("Turn cancelled", events=handler.events_sent)
            raise
        except TransportError:
            logger.info("Stream closed before the turn finished", events=handler.events_sent)
            return self._failed(conversation_id, TransportError.code, handler)
        except SearchAgentError as e:
            logger.warning("Turn failed", code=e.code, error=e.message)
            metrics.increment_counter("turns_failed", tags={"code": e.code})
            await self._send_failure(handler, e.code)
            return self._failed(conversation_id, e.code, handler)
        except Exception:
            logger.exception("Unexpected agent loop failure")
            metrics.increment_counter("turns_failed", tags={"code": INTERNAL_ERROR})
            await self._send_failure(handler, INTERNAL_ERROR)
            return self._failed(conversation_id, INTERNAL_ERROR, handler)
        finally:
            structlog.contextvars.unbind_contextvars("conversation_id")

    async def _load_history(self, conversation_id: str) -> List[Turn]:
        try:
            conversation = await self.checkpoint_store.get(conversation_id)
        except Exception as e:
            raise SearchAgentError(f"Failed to load conversation: {e}", code=CHECKPOINT_STORE_ERROR) from e
        if conversation is None:
            return []
        logger.debug("Loaded history", turns=len(conversation.turns))
        return list(conversation.turns)

    async def _send_failure(self, handler: StreamingHandler, reason: str) -> None:
        if handler.terminated:
            return
        try:
            await handler.send_error(reason)
        except TransportError:
            logger.info("Could not deliver error event; stream already closed")

    def _failed(self, conversation_id: str, error: str, handler: StreamingHandler) -> TurnResult:
        return TurnResult(
            conversation_id=conversation_id,
            status=LoopState.FAILED,
            error=error,
            events_sent=handler.events_sent
        )
