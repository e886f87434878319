from typing import Dict, List, Any, Optional, Callable
import structlog

from search_agent.domain.errors import ToolErrorKind
from search_agent.domain.tool.tool_executor import (
    Err, ToolExecutor, ToolFunction, ToolOutcome, ToolSpec
)
from search_agent.domain.tool.tool_validator import ToolParameterValidator

logger = structlog.get_logger(__name__)

ANY_OBJECT_SCHEMA: Dict[str, Any] = {"type": "object"}


class ToolRegistry:
    """Registry for managing available tools

    ``execute`` never raises past this boundary: every failure comes back as
    an ``Err`` carrying a distinguishable ``ToolErrorKind``.
    """

    def __init__(self, default_timeout: float = 8.0, executor: Optional[ToolExecutor] = None):
        self.default_timeout = default_timeout
        self.tools: Dict[str, ToolSpec] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        self.executor = executor or ToolExecutor()

    def register(
        self,
        name: str,
        input_schema: Dict[str, Any],
        executor: ToolFunction,
        result_schema: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        description: str = "",
        category: str = "general",
        query_field: Optional[str] = None,
        sources: Optional[Callable[[Dict[str, Any]], List[str]]] = None
    ) -> ToolSpec:
        """Register a new tool"""

        result_schema = result_schema or ANY_OBJECT_SCHEMA
        ToolParameterValidator.check_schema(input_schema)
        ToolParameterValidator.check_schema(result_schema)

        if name in self.tools:
            logger.warning("Replacing registered tool", tool_name=name)
            self.unregister(name)

        spec = ToolSpec(
            name=name,
            input_schema=input_schema,
            result_schema=result_schema,
            executor=executor,
            timeout=timeout if timeout is not None else self.default_timeout,
            description=description,
            category=category,
            query_field=query_field,
            sources=sources
        )
        self.tools[name] = spec
        self.tool_categories.setdefault(category, []).append(name)
        logger.debug("Registered tool", tool_name=name, category=category, timeout=spec.timeout)
        return spec

    def unregister(self, name: str) -> bool:
        spec = self.tools.pop(name, None)
        if spec is None:
            return False
        self.tool_categories[spec.category].remove(name)
        return True

    def get_tool(self, name: str) -> Optional[ToolSpec]:
        return self.tools.get(name)

    def get_tools_by_category(self, category: str) -> List[ToolSpec]:
        tool_names = self.tool_categories.get(category, [])
        return [self.tools[name] for name in tool_names if name in self.tools]

    @property
    def names(self) -> List[str]:
        return list(self.tools)

    def to_tool_definitions(self) -> List[Dict[str, Any]]:
        """Model-facing function definitions for every registered tool"""

        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.input_schema
                }
            }
            for spec in self.tools.values()
        ]

    def describe_query(self, name: str, arguments: Dict[str, Any]) -> str:
        spec = self.tools.get(name)
        if spec is None:
            return name
        return spec.describe_query(arguments)

    def extract_sources(self, name: str, result: Dict[str, Any]) -> List[str]:
        spec = self.tools.get(name)
        if spec is None:
            return []
        return spec.extract_sources(result)

    async def execute(self, name: str, arguments: Dict[str, Any]) -> ToolOutcome:
        """Validate arguments and run the tool under its timeout"""

        spec = self.tools.get(name)
        if spec is None:
            logger.warning("Unknown tool requested", tool_name=name)
            return Err(ToolErrorKind.UNKNOWN_TOOL, f"No tool named '{name}' is registered")

        validation = ToolParameterValidator.validate(spec.input_schema, arguments)
        if not validation.is_valid:
            logger.warning("Invalid tool arguments", tool_name=name, errors=validation.errors)
            return Err(ToolErrorKind.INVALID_ARGUMENTS, "; ".join(validation.errors))

        return await self.executor.run_detached(spec, arguments)
