"""
Error taxonomy for the search agent.

Every error that crosses a module boundary derives from SearchAgentError so the
API layer can turn it into a structured JSON body and the agent loop can turn
it into a terminal ``error`` event.
"""

from typing import Any, Dict, List, Optional
from enum import Enum


class SearchAgentError(Exception):
    """Base class for all search agent errors

    Attributes:
        code: Machine readable error code, also used as the wire reason
        message: Human readable description
        http_status: Status code used when the error reaches the HTTP layer
        extra: Additional fields included in the JSON error body
    """

    code = "search_agent_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        **extra: Any
    ):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ConfigurationError(SearchAgentError):
    """Missing or invalid environment configuration"""

    code = "configuration_error"
    http_status = 500

    def __init__(self, missing: Optional[List[str]] = None, message: Optional[str] = None):
        self.missing = list(missing or [])
        if message is None:
            message = f"Missing required configuration: {', '.join(self.missing)}"
        super().__init__(message, missing=self.missing)


class AuthenticationError(SearchAgentError):
    """Missing or invalid credential"""

    code = "authentication_error"
    http_status = 401


class ValidationError(SearchAgentError):
    """Malformed request body or parameters"""

    code = "validation_error"
    http_status = 400


class NotFoundError(SearchAgentError):
    code = "not_found"
    http_status = 404


class ToolErrorKind(str, Enum):
    """Distinguishable tool failure kinds surfaced in search_error events"""
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    TIMEOUT = "timeout"
    EXECUTION_FAILED = "execution_failed"
    INVALID_RESULT = "invalid_result"


class ToolError(SearchAgentError):
    """A single tool call failed; recovered locally by the agent loop"""

    code = "tool_error"

    def __init__(self, kind: ToolErrorKind, message: str):
        self.kind = kind
        super().__init__(message, kind=kind.value)


class StepLimitError(SearchAgentError):
    """Too many model/tool round-trips within one user turn"""

    code = "step_limit_exceeded"

    def __init__(self, max_steps: int):
        self.max_steps = max_steps
        super().__init__(
            f"Exceeded the maximum of {max_steps} tool round-trips",
            max_steps=max_steps
        )


class UpstreamModelError(SearchAgentError):
    """The language model call failed or timed out"""

    code = "upstream_model_error"
    http_status = 502


class TransportError(SearchAgentError):
    """The client went away or the stream was superseded; never surfaced"""

    code = "transport_closed"


class EventEncodingError(SearchAgentError):
    """An event could not be serialized; the stream already carries the error frame"""

    code = "event_encoding_failed"
