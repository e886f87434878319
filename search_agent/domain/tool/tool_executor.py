# Execution with timeout & monitoring
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import asyncio
import json
import time
import structlog

from search_agent.domain.errors import ToolErrorKind
from search_agent.domain.tool.tool_validator import ToolParameterValidator
from search_agent.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

ToolFunction = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class Ok:
    result: Dict[str, Any]
    ok = True


@dataclass(frozen=True)
class Err:
    kind: ToolErrorKind
    detail: str = ""
    ok = False


ToolOutcome = Union[Ok, Err]


@dataclass
class ToolSpec:
    """A registered tool and its contract"""
    name: str
    input_schema: Dict[str, Any]
    result_schema: Dict[str, Any]
    executor: ToolFunction
    timeout: float
    description: str = ""
    category: str = "general"
    query_field: Optional[str] = None
    sources: Optional[Callable[[Dict[str, Any]], List[str]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def describe_query(self, arguments: Dict[str, Any]) -> str:
        """Text shown to the client while this tool runs"""
        if self.query_field and arguments.get(self.query_field) is not None:
            return str(arguments[self.query_field])
        return self.name

    def extract_sources(self, result: Dict[str, Any]) -> List[str]:
        if self.sources is None:
            return []
        return [url for url in self.sources(result) if isinstance(url, str) and url]


class ToolExecutor:
    """Runs tool functions under their timeout and converts every failure to Err"""

    async def run(self, spec: ToolSpec, arguments: Dict[str, Any]) -> ToolOutcome:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(spec.executor(arguments), timeout=spec.timeout)
        except asyncio.TimeoutError:
            outcome: ToolOutcome = Err(ToolErrorKind.TIMEOUT, f"Tool '{spec.name}' timed out after {spec.timeout}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome = Err(ToolErrorKind.EXECUTION_FAILED, str(e) or type(e).__name__)
        else:
            validation = ToolParameterValidator.validate(spec.result_schema, result)
            if not validation.is_valid:
                outcome = Err(ToolErrorKind.INVALID_RESULT, "; ".join(validation.errors))
            else:
                outcome = _serializable(spec.name, result)

        duration_ms = (time.perf_counter() - started) * 1000
        agent_logger.log_tool_execution(
            tool_name=spec.name,
            input_data=arguments,
            duration_ms=duration_ms,
            success=outcome.ok,
            error=None if outcome.ok else outcome.kind.value
        )
        metrics.record_latency("tool_execution", duration_ms, tags={"tool": spec.name})
        return outcome

    async def run_detached(self, spec: ToolSpec, arguments: Dict[str, Any]) -> ToolOutcome:
        """Run the tool in its own task so a cancelled caller does not interrupt it

        The task keeps running until it finishes or hits its own timeout; its
        outcome is then discarded.
        """
        task = asyncio.ensure_future(self.run(spec, arguments))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_discarded(spec.name))
            raise


def _log_discarded(tool_name: str) -> Callable[["asyncio.Future[ToolOutcome]"], None]:
    def callback(task: "asyncio.Future[ToolOutcome]") -> None:
        if task.cancelled():
            return
        outcome = task.result()
        logger.info("Discarded tool result of cancelled turn", tool_name=tool_name, success=outcome.ok)
    return callback


def _serializable(tool_name: str, result: Dict[str, Any]) -> ToolOutcome:
    """Results are replayed to the model and persisted as JSON"""
    try:
        json.dumps(result, default=str)
    except (TypeError, ValueError) as e:
        return Err(ToolErrorKind.INVALID_RESULT, f"Tool '{tool_name}' result is not serializable: {e}")
    return Ok(result)
