"""Core data models for refiner-client."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

TEMP_ID_PREFIX = "temp-"


def parse_timestamp(value) -> Optional[datetime]:
    """Normalise an ISO string or epoch-seconds value to an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


class Observable:
    """Listener registry; stores call ``_notify`` after every state change."""

    def __init__(self) -> None:
        self._listeners: list = []

    def subscribe(self, listener):
        """Register ``listener(store)``; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)


@dataclass
class ChatSession:
    """A single-user chat transcript."""

    id: str
    user_id: str
    title: str = ""
    workspace_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    message_count: int = 0
    metadata: dict = field(default_factory=dict)  # first/last message previews
    is_shared: bool = False
    participants: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ChatSession":
        return cls(
            id=data["id"],
            user_id=data.get("user_id", ""),
            title=data.get("title") or "",
            workspace_id=data.get("workspace_id"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            message_count=int(data.get("message_count") or 0),
            metadata=data.get("metadata") or {},
            is_shared=bool(data.get("is_shared", False)),
            participants=list(data.get("participants") or []),
        )

    def evolve(self, **changes) -> "ChatSession":
        return replace(self, **changes)


@dataclass
class ChatMessage:
    """A message in a session or a workspace conversation."""

    id: str
    session_id: str  # conversation_id for workspace messages
    user_id: str  # sender_id for workspace messages
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(
            id=str(data["id"]),
            session_id=data.get("session_id") or data.get("conversation_id") or "",
            user_id=data.get("user_id") or data.get("sender_id") or "",
            role=data.get("role", "user"),
            content=data.get("content", ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            metadata=data.get("metadata") or {},
        )

    @property
    def is_temp(self) -> bool:
        return is_temp_id(self.id)


@dataclass
class Workspace:
    """A multi-user collaborative container for messages and documents."""

    id: str
    name: str
    owner_id: str = ""
    participants: list[str] = field(default_factory=list)
    message_count: int = 0
    document_count: int = 0
    active_document_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Workspace":
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            owner_id=data.get("owner_id", ""),
            participants=list(data.get("participants") or []),
            message_count=int(data.get("message_count") or 0),
            document_count=int(data.get("document_count") or 0),
            active_document_id=data.get("active_document_id"),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


@dataclass
class DocumentContext:
    """A document attached to a workspace."""

    file_id: str
    filename: str
    file_type: str
    current_pass: int = 0
    job_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentContext":
        return cls(
            file_id=data["file_id"],
            filename=data.get("filename", ""),
            file_type=data.get("file_type", ""),
            current_pass=int(data.get("current_pass") or 0),
            job_id=data.get("job_id"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Participant:
    """A member of a shared chat session."""

    user_id: str
    email: str = ""
    name: str = ""
    is_owner: bool = False
    joined_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(
            user_id=data["user_id"],
            email=data.get("email", ""),
            name=data.get("name", ""),
            is_owner=bool(data.get("is_owner", False)),
            joined_at=parse_timestamp(data.get("joined_at")),
        )
