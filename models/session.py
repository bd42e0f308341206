"""
Session Models
Server-side session record and the client-side stream cursor
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from models.events import utcnow


class Session(BaseModel):
    """
    One logical multi-turn computation

    agent_session_id is whatever id the computation backend reported for
    the conversation; it is handed back on the next turn so the backend
    continues the same conversation.
    """
    session_id: str
    created_at: datetime = Field(default_factory=utcnow)
    cwd: Optional[str] = None
    allowed_tools: List[str] = Field(default_factory=list)
    agent_session_id: Optional[str] = None


class SessionInfo(BaseModel):
    """Session metadata as returned by GET /v1/sessions/{session_id}"""
    session: Session
    last_event_id: int
    turn_active: bool


class StreamCursor(BaseModel):
    """Client resumption bookmark"""
    session_id: str
    last_event_id: int = 0

    def advance(self, event_id: int) -> "StreamCursor":
        return StreamCursor(session_id=self.session_id, last_event_id=event_id)
