import json

from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from search_agent.domain.context.context_manager import ContextManager, tool_message_content
from search_agent.domain.llm.chat_model import LangChainChatModel, ToolCallRequest
from search_agent.domain.models.agent_state import Conversation, Role, ToolInvocation, Turn


def completed(call_id, step, result=None, error=None):
    invocation = ToolInvocation(call_id=call_id, tool_name="web_search", arguments={"query": call_id}, step=step)
    invocation.complete(result=result, error=error, error_detail="took too long" if error else None)
    return invocation


def test_build_messages_orders_history():
    history = [
        Turn(role=Role.USER, content="first question"),
        Turn(role=Role.ASSISTANT, content="first answer"),
    ]

    messages = ContextManager(system_prompt="be brief").build_messages(history, "second question")

    assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]
    assert messages[0].content == "be brief"
    assert messages[-1].content == "second question"


def test_tool_invocations_are_grouped_by_step():
    turn = Turn(
        role=Role.ASSISTANT,
        content="answer",
        tool_invocations=[
            completed("a", 1, result={"ok": 1}),
            completed("b", 1, error="timeout"),
            completed("c", 2, result={"ok": 2}),
        ]
    )

    messages = ContextManager().turn_to_messages(turn)

    assert [type(m) for m in messages] == [AIMessage, ToolMessage, ToolMessage, AIMessage, ToolMessage, AIMessage]
    assert [call["id"] for call in messages[0].tool_calls] == ["a", "b"]
    assert messages[2].tool_call_id == "b"
    assert messages[-1].content == "answer"


def test_tool_message_content():
    assert tool_message_content(completed("a", 1, result={"value": 4})) == '{"value": 4}'
    assert tool_message_content(completed("b", 1, error="timeout")) == '{"error": "timeout", "detail": "took too long"}'


def test_unserializable_result_becomes_error_message():
    content = json.loads(tool_message_content(completed("a", 1, result={"value": 10 ** 5000})))

    assert content["error"] == "invalid_result"


def test_history_window_starts_at_user_turn():
    conversation = Conversation(conversation_id="c").append(*[
        Turn(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, content=str(i)) for i in range(6)
    ])

    messages = ContextManager(max_history_turns=3).build_messages(conversation.turns, "next")

    assert [m.content for m in messages[1:]] == ["4", "5", "next"]


def test_tool_call_request_to_langchain():
    call = ToolCallRequest(name="weather", arguments={"location": "Delhi"})

    assert call.call_id.startswith("call_")
    assert call.to_langchain() == {
        "name": "weather", "args": {"location": "Delhi"}, "id": call.call_id, "type": "tool_call"
    }


async def test_langchain_adapter_streams_text():
    llm = GenericFakeChatModel(messages=iter([AIMessage(content="hello streaming world")]))
    model = LangChainChatModel(llm)

    chunks = [chunk async for chunk in model.stream([HumanMessage(content="hi")], tools=[])]

    assert "".join(chunk.text for chunk in chunks) == "hello streaming world"
    assert all(not chunk.tool_calls for chunk in chunks)
