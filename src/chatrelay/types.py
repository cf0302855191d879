from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class InboundRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    action: str
    message: str = ""
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class TextDelta(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class UsageEvent(BaseModel):
    kind: Literal["usage"] = "usage"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    search_queries: int = 0


class CitationsEvent(BaseModel):
    kind: Literal["citations"] = "citations"
    citations: list[str] = Field(default_factory=list)


class FinishEvent(BaseModel):
    kind: Literal["finish"] = "finish"
    finish_reason: str


StreamEvent = Union[TextDelta, UsageEvent, CitationsEvent, FinishEvent]


class SessionRecord(BaseModel):
    session_id: str
    connection_id: str
    user_id: str
    conversation_id: Optional[str] = None
    canceled: bool = False
    delete_at: Optional[int] = None


class Conversation(BaseModel):
    conversation_id: str
    user_id: str
    title: Optional[str] = None
    created_at: int
    last_message_at: int
    expires_at: Optional[int] = None


class TranscriptRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    message_index: int = Field(ge=0)
    query: str
    response: str
    model: str
    cost: float = Field(ge=0)
    citations: Optional[list[str]] = None


@dataclass
class StreamState:
    response: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    search_queries: int = 0
    usage_received: bool = False
    citations: list[str] | None = None
    canceled: bool = False
    timed_out: bool = False
    failed: bool = False
    finish_reason: str | None = None
    fragments: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        if self.canceled:
            return "canceled"
        if self.timed_out:
            return "timeout"
        if self.failed:
            return "error"
        return "done"


@dataclass(frozen=True)
class DispatchResult:
    status_code: int
    body: str
    conversation_id: str | None = None
    state: StreamState | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"statusCode": self.status_code, "body": self.body}
        if self.conversation_id is not None:
            payload["conversationId"] = self.conversation_id
        return payload
