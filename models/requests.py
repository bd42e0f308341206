"""
Request Models
Bodies accepted by the agent stream endpoint
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


class StreamRequest(BaseModel):
    """
    Stream-start (or resume attach) request

    text starts a new turn. A request without text only re-attaches to the
    session's live stream and must carry a Last-Event-ID header.
    """
    text: Optional[str] = None
    session_id: Optional[str] = None
    allowed_tools: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    system_prompt: Optional[str] = None
    max_turns: Optional[int] = Field(default=None, ge=1)

    @field_validator("text", "session_id", "cwd")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @property
    def starts_turn(self) -> bool:
        return self.text is not None

    def json_body(self) -> Dict[str, Any]:
        """Wire body with unset optional fields left out"""
        return self.model_dump(exclude_none=True)
