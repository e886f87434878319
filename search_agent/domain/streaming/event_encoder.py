"""
Server-sent event framing.

Each stream event becomes exactly one frame ``data: <json>\\n\\n``. The JSON is
the flat event shape, e.g. ``{"type": "content", "content": "Hi"}``.
"""

from typing import Any, Dict, Union
import json
import structlog
from pydantic import BaseModel, ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from search_agent.application.streaming.schema.events import (
    BaseEvent, ErrorEvent, stream_event_adapter
)

logger = structlog.get_logger(__name__)

FRAME_PREFIX = "data: "
FRAME_DELIMITER = "\n\n"
ENCODING_FAILED = "event_encoding_failed"

ENCODING_FAILED_FRAME = f'{FRAME_PREFIX}{{"type":"error","error":"{ENCODING_FAILED}"}}{FRAME_DELIMITER}'


def encode_event(event: Union[BaseEvent, Dict[str, Any]]) -> str:
    """Serialize one event into one self-delimited frame

    Dicts are validated against the closed event schema first. Anything that
    cannot be validated or serialized becomes an ``error`` frame.
    """

    try:
        if not isinstance(event, BaseModel):
            event = stream_event_adapter.validate_python(event)
        payload = event.model_dump_json()
    except (PydanticValidationError, PydanticSerializationError, TypeError, ValueError) as e:
        logger.error("Failed to encode stream event", error=str(e))
        return ENCODING_FAILED_FRAME

    return f"{FRAME_PREFIX}{payload}{FRAME_DELIMITER}"


def is_encoding_failure(frame: str) -> bool:
    return frame == ENCODING_FAILED_FRAME


def encode_error(reason: str) -> str:
    return encode_event(ErrorEvent(error=reason))


def decode_event(payload: Union[str, bytes]) -> BaseEvent:
    """Parse the JSON payload of one frame back into a typed event

    Raises pydantic.ValidationError for unknown types or malformed payloads.
    """

    return stream_event_adapter.validate_json(payload)


def decode_frame(frame: str) -> BaseEvent:
    """Parse a whole ``data: ...`` frame"""

    lines = [
        line[len("data:"):].lstrip(" ")
        for line in frame.strip("\n").split("\n")
        if line.startswith("data:")
    ]
    if not lines:
        raise ValueError("Frame carries no data lines")
    return decode_event("\n".join(lines))


def frame_to_dict(frame: str) -> Dict[str, Any]:
    """Raw JSON object of a frame; used by tests and debugging tools"""

    return json.loads(frame[len(FRAME_PREFIX):].strip())
