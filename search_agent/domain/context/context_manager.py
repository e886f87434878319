from typing import Dict, List, Any, Optional
from itertools import groupby
import json
import structlog
from langchain_core.messages import (
    AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
)

from search_agent.domain.errors import ToolErrorKind
from search_agent.domain.models.agent_state import Role, ToolInvocation, Turn

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = """You are a helpful research assistant. Use the provided tools to answer questions accurately.

When you use web_search, present the results clearly and cite your sources.
For calculations, use the calculator tool.
For weather information, use the weather tool.
For image searches, use the image_search tool.
If a tool reports an error, answer as well as you can without it and say that the tool was unavailable."""


def tool_message_content(invocation: ToolInvocation) -> str:
    """What the model sees as the output of a tool call"""

    if invocation.error is not None:
        payload: Dict[str, Any] = {"error": invocation.error, "detail": invocation.error_detail or ""}
    else:
        payload = invocation.result or {}
    try:
        return json.dumps(payload, default=str, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.warning("Tool result not serializable", tool_name=invocation.tool_name, error=str(e))
        return json.dumps({"error": ToolErrorKind.INVALID_RESULT.value, "detail": str(e)})


class ContextManager:
    """Assembles the model context for one user turn"""

    def __init__(self, system_prompt: str = SYSTEM_PROMPT, max_history_turns: Optional[int] = None):
        self.system_prompt = system_prompt
        self.max_history_turns = max_history_turns

    def build_messages(self, history: List[Turn], user_text: str) -> List[BaseMessage]:
        """System prompt, prior turns with their tool calls, then the new message"""

        turns = history
        if self.max_history_turns is not None and len(turns) > self.max_history_turns:
            turns = turns[-self.max_history_turns:]
            # Never start the window in the middle of an exchange
            while turns and turns[0].role != Role.USER:
                turns = turns[1:]

        messages: List[BaseMessage] = [SystemMessage(content=self.system_prompt)]
        for turn in turns:
            messages.extend(self.turn_to_messages(turn))
        messages.append(HumanMessage(content=user_text))

        logger.debug("Built model context", history_turns=len(turns), messages=len(messages))
        return messages

    def turn_to_messages(self, turn: Turn) -> List[BaseMessage]:
        if turn.role == Role.USER:
            return [HumanMessage(content=turn.content)]

        messages: List[BaseMessage] = []
        for _, group in groupby(turn.tool_invocations, key=lambda inv: inv.step):
            invocations = list(group)
            messages.append(AIMessage(
                content="",
                tool_calls=[
                    {"name": inv.tool_name, "args": inv.arguments, "id": inv.call_id, "type": "tool_call"}
                    for inv in invocations
                ]
            ))
            messages.extend(
                ToolMessage(
                    content=tool_message_content(inv),
                    tool_call_id=inv.call_id,
                    name=inv.tool_name
                )
                for inv in invocations
            )
        messages.append(AIMessage(content=turn.content))
        return messages
