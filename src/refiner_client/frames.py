"""Typed frames carried over the workspace WebSocket."""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)


class FrameType(str, Enum):
    MESSAGE = "message"
    TYPING = "typing"
    PRESENCE = "presence"
    DOCUMENT_UPDATE = "document_update"
    MESSAGES_CLEARED = "messages_cleared"
    PONG = "pong"
    UNKNOWN = "unknown"

    @classmethod
    def from_tag(cls, tag) -> "FrameType":
        try:
            return cls(tag)
        except ValueError:
            return cls.UNKNOWN


@dataclass
class Frame:
    """One server event. ``tag`` keeps the raw type string for UNKNOWN frames."""

    type: FrameType
    data: dict = field(default_factory=dict)
    tag: str = ""


def decode_frame(raw: Union[str, bytes]) -> Optional[Frame]:
    """Parse a raw frame, returning None (and logging) if it is not a frame."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse WebSocket frame: %s", e)
        return None
    if not isinstance(payload, dict):
        logger.error("Dropping non-object WebSocket frame: %r", payload)
        return None

    tag = str(payload.get("type", ""))
    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}
    return Frame(type=FrameType.from_tag(tag), data=data, tag=tag)


def encode_typing(is_typing: bool) -> str:
    return json.dumps({"type": FrameType.TYPING.value, "data": {"is_typing": is_typing}})
