from dataclasses import dataclass
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant", "system"]
    content: str


class ChatContext(BaseModel):
    """A retrieved article chunk."""

    id: str
    content: str
    post_slug: str
    relevance_score: float | None = None


class Citation(BaseModel):
    text: str
    link: str


class RagChatRequest(BaseModel):
    message: str = Field(min_length=1)
    conversation_history: list[ChatMessage] = []
    conversation_id: str | None = None


class RagChatResponse(BaseModel):
    response: str
    context_used: list[ChatContext]
    optimized_query: str
    technical_response: str
    citations: list[Citation]
    conversation_id: str


class CompletionOptions(BaseModel):
    temperature: float = 0.7
    max_tokens: int = 500
    stream: bool = False
    previous_response_id: str | None = None
    instructions: str | None = None
    call_type: str = "unknown"


@dataclass(frozen=True)
class CompletionResult:
    text: str
    response_id: str


@dataclass
class StreamingCallbacks:
    """
    Hooks for a streamed completion. Every hook is optional and called
    synchronously from the stream reader, so none of them may block.

    on_complete receives the full text and, when invoked by the pipeline,
    a metadata dict with "citations" and "context_used".
    """

    on_start: Callable[[], None] | None = None
    on_token: Callable[[str], None] | None = None
    on_complete: Callable[..., None] | None = None
    on_error: Callable[[Exception], None] | None = None


@dataclass(frozen=True)
class StreamEvent:
    kind: Literal["start", "token", "complete", "error"]
    payload: Any = None
