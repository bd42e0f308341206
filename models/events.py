"""
Event Models
Typed envelopes shared by the event log, the live stream and replay
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Annotated, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventType(str, Enum):
    """Closed set of event kinds a turn can produce"""
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    RESULT = "result"
    ERROR = "error"


TERMINAL_EVENT_TYPES = frozenset({EventType.RESULT, EventType.ERROR})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """
    One ordered, immutable unit of output from a turn

    event_id is assigned by the event log: it starts at 1 for every
    session and grows by exactly one per append.
    """
    model_config = ConfigDict(frozen=True)

    event_id: int = Field(ge=1)
    session_id: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def event_type(self) -> EventType:
        return EventType(self.type)

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES


class SystemEvent(BaseEvent):
    type: Literal["system"] = "system"


class AssistantEvent(BaseEvent):
    type: Literal["assistant"] = "assistant"


class UserEvent(BaseEvent):
    type: Literal["user"] = "user"


class ResultEvent(BaseEvent):
    type: Literal["result"] = "result"


class ErrorEvent(BaseEvent):
    type: Literal["error"] = "error"


Event = Annotated[
    Union[SystemEvent, AssistantEvent, UserEvent, ResultEvent, ErrorEvent],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter = TypeAdapter(Event)

_EVENT_CLASSES = {
    EventType.SYSTEM: SystemEvent,
    EventType.ASSISTANT: AssistantEvent,
    EventType.USER: UserEvent,
    EventType.RESULT: ResultEvent,
    EventType.ERROR: ErrorEvent,
}


def make_event(
    event_type: EventType,
    event_id: int,
    session_id: str,
    payload: Dict[str, Any],
    received_at: Optional[datetime] = None,
) -> BaseEvent:
    """
    Build the concrete event variant for event_type

    Args:
        event_type: Kind of event
        event_id: Id assigned by the event log
        session_id: Owning session
        payload: Opaque structured document
        received_at: Commit time, defaults to now

    Returns:
        SystemEvent, AssistantEvent, UserEvent, ResultEvent or ErrorEvent
    """
    cls = _EVENT_CLASSES[EventType(event_type)]
    return cls(
        event_id=event_id,
        session_id=session_id,
        payload=payload,
        received_at=received_at or utcnow(),
    )
