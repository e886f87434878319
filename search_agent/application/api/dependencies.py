from typing import Any, Dict, Optional
from dataclasses import dataclass
from fastapi import Header, Request
import pydantic
import structlog

from search_agent.application.streaming.stream_manager import StreamManager
from search_agent.domain.context.memory.checkpoint_store import CheckpointStore, InMemoryCheckpointStore
from search_agent.domain.errors import ConfigurationError, ValidationError
from search_agent.domain.llm.chat_model import ChatModel, build_chat_model
from search_agent.domain.orchestration.core.main_agent import AgentOrchestrator
from search_agent.domain.tool.builtin_tools import SearchTools, register_builtin_tools
from search_agent.domain.tool.tool_registry import ToolRegistry
from search_agent.infrastructure.config.settings import Settings
from search_agent.infrastructure.persistence.redis_checkpoint_store import RedisCheckpointStore
from search_agent.infrastructure.security.token_validator import verify_token

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler needs, built once per process"""
    settings: Settings
    orchestrator: AgentOrchestrator
    checkpoint_store: CheckpointStore
    stream_manager: StreamManager
    tool_registry: ToolRegistry
    search_tools: Optional[SearchTools] = None

    async def aclose(self):
        await self.stream_manager.shutdown()
        await self.checkpoint_store.close()
        if self.search_tools is not None:
            await self.search_tools.aclose()


def create_checkpoint_store(settings: Settings) -> CheckpointStore:
    """Pick the store backend from CHECKPOINT_STORE_URL"""

    url = settings.checkpoint_store_url or ""
    if url.startswith("memory://"):
        return InMemoryCheckpointStore(ttl_seconds=settings.checkpoint_ttl_seconds)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisCheckpointStore(url, ttl_seconds=settings.checkpoint_ttl_seconds)
    raise ConfigurationError(
        missing=["CHECKPOINT_STORE_URL"],
        message="CHECKPOINT_STORE_URL must start with redis://, rediss://, unix:// or memory://"
    )


def build_services(
    settings: Settings,
    chat_model: Optional[ChatModel] = None,
    tool_registry: Optional[ToolRegistry] = None,
    checkpoint_store: Optional[CheckpointStore] = None
) -> ServiceContainer:
    """Wire the agent from settings; collaborators may be supplied directly"""

    search_tools = None
    if tool_registry is None:
        tool_registry = ToolRegistry(default_timeout=settings.tool_timeout_seconds)
        search_tools = SearchTools(
            search_api_key=settings.search_api_key,
            search_engine_id=settings.search_engine_id,
            unsplash_access_key=settings.unsplash_access_key
        )
        register_builtin_tools(tool_registry, search_tools)

    if chat_model is None:
        chat_model = build_chat_model(
            api_key=settings.model_api_key,
            model_name=settings.model_name,
            temperature=settings.model_temperature,
            max_output_tokens=settings.model_max_output_tokens,
            timeout=settings.model_timeout_seconds
        )

    if checkpoint_store is None:
        checkpoint_store = create_checkpoint_store(settings)

    orchestrator = AgentOrchestrator(
        chat_model=chat_model,
        tool_registry=tool_registry,
        checkpoint_store=checkpoint_store,
        max_tool_steps=settings.max_tool_steps,
        model_timeout=settings.model_timeout_seconds
    )

    logger.info(
        "Services initialized",
        tools=tool_registry.names,
        store=type(checkpoint_store).__name__,
        max_tool_steps=settings.max_tool_steps
    )
    return ServiceContainer(
        settings=settings,
        orchestrator=orchestrator,
        checkpoint_store=checkpoint_store,
        stream_manager=StreamManager(queue_size=settings.stream_queue_size),
        tool_registry=tool_registry,
        search_tools=search_tools
    )


def get_services(request: Request) -> ServiceContainer:
    """Return the process services, retrying configuration if startup failed

    Raises:
        ConfigurationError: Listing every missing required setting
    """

    services = request.app.state.services
    if services is None:
        settings = request.app.state.settings_loader()
        services = build_services(settings)
        request.app.state.services = services
    return services


async def require_admin(request: Request, authorization: Optional[str] = Header(None)) -> ServiceContainer:
    """Configuration first, then the bearer secret"""

    services = get_services(request)
    verify_token(authorization, services.settings.admin_api_key)
    return services


def parse_model(model: Any, data: Dict[str, Any]) -> Any:
    """Validate request data into ``model``, raising our ValidationError"""

    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError("Invalid request", details=details) from e


async def read_json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data

