from typing import Annotated, Any, AsyncIterator, Dict, Optional
from uuid import uuid4
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
import structlog

from search_agent.application.api.dependencies import (
    ServiceContainer, parse_model, read_json_body, require_admin
)
from search_agent.application.streaming.schema.events import ChatRequest, ClearRequest
from search_agent.domain.errors import NotFoundError

logger = structlog.get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

Services = Annotated[ServiceContainer, Depends(require_admin)]


def start_stream(services: ServiceContainer, chat_request: ChatRequest) -> StreamingResponse:
    """Run the agent loop for one message and stream its events"""

    new_conversation = chat_request.checkpoint_id is None
    conversation_id = chat_request.checkpoint_id or str(uuid4())
    manager = services.stream_manager

    async def event_stream() -> AsyncIterator[str]:
        channel = await manager.open_stream(
            conversation_id,
            lambda sink: services.orchestrator.run_turn(
                conversation_id,
                chat_request.message,
                sink,
                new_conversation=new_conversation
            )
        )
        try:
            async for frame in channel:
                yield frame
        finally:
            # Reader gone (disconnect or normal end); a finished loop is already forgotten
            if manager.cancel_stream(conversation_id, channel):
                logger.info("Client disconnected; loop cancelled", conversation_id=conversation_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/chat_stream")
async def chat_stream_query(
    services: Services,
    message: Optional[str] = Query(None),
    checkpoint_id: Optional[str] = Query(None)
):
    data: Dict[str, Any] = {"message": message}
    if checkpoint_id is not None:
        data["checkpoint_id"] = checkpoint_id
    return start_stream(services, parse_model(ChatRequest, data))


@router.post("/chat_stream")
async def chat_stream_body(request: Request, services: Services):
    data = await read_json_body(request)
    return start_stream(services, parse_model(ChatRequest, data))


@router.get("/chat_stream/{message}")
async def chat_stream_path(
    message: str,
    services: Services,
    checkpoint_id: Optional[str] = Query(None)
):
    data: Dict[str, Any] = {"message": message}
    if checkpoint_id is not None:
        data["checkpoint_id"] = checkpoint_id
    return start_stream(services, parse_model(ChatRequest, data))


@router.post("/clear")
async def clear_conversation(request: Request, services: Services):
    """Forget a conversation and stop any loop still running for it"""

    clear_request = parse_model(ClearRequest, await read_json_body(request))
    services.stream_manager.cancel_stream(clear_request.checkpoint_id)
    cleared = await services.checkpoint_store.delete(clear_request.checkpoint_id)

    logger.info("Conversation cleared", conversation_id=clear_request.checkpoint_id, existed=cleared)
    return {"cleared": cleared, "checkpoint_id": clear_request.checkpoint_id}


@router.get("/conversations/{checkpoint_id}")
async def get_conversation(checkpoint_id: str, services: Services):
    conversation = await services.checkpoint_store.get(checkpoint_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {checkpoint_id} not found", checkpoint_id=checkpoint_id)
    body = conversation.model_dump(mode="json")
    body["summary"] = conversation.get_summary()
    return body
