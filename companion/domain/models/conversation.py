from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
from uuid import uuid4


class MessageRole(str, Enum):
    """Speaker of a conversation message"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationMessage(BaseModel):
    """A single dialogue turn. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    include_in_context: bool = Field(default=True, description="Whether the message survives into persisted context")

    @classmethod
    def system(cls, content: str, include_in_context: bool = True) -> "ConversationMessage":
        return cls(role=MessageRole.SYSTEM, content=content, include_in_context=include_in_context)

    @classmethod
    def user(cls, content: str) -> "ConversationMessage":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ConversationMessage":
        return cls(role=MessageRole.ASSISTANT, content=content)

    def excluded(self) -> "ConversationMessage":
        """Copy of this message dropped from context"""
        return self.model_copy(update={"include_in_context": False})

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class Session(BaseModel):
    """Conversation session state"""
    id: str = Field(default_factory=lambda: uuid4().hex)
    conversation_id: str = Field(description="Owning chat instance")
    server_id: Optional[str] = None
    messages: List[ConversationMessage] = Field(default_factory=list)
    context: str = Field(default="", description="Accumulated running summary")
    context_tokens: int = Field(default=0, description="Token estimate of the running summary")
    preferred_model: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_activity_at: datetime = Field(default_factory=datetime.utcnow)

    def context_messages(self) -> List[ConversationMessage]:
        """Messages still included in context, oldest first"""
        return [m for m in self.messages if m.include_in_context]


class ServerMeta(BaseModel):
    """Per-server persona and model preferences"""
    server_id: str
    persona: Optional[str] = None
    preferred_provider: Optional[str] = None
    preferred_model: Optional[str] = None


class TokenUsage(BaseModel):
    """Token accounting reported by a provider"""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_prompt_tokens: Optional[int] = None
    cache_hit_ratio: Optional[float] = None

    @classmethod
    def build(
        cls,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: Optional[int] = None,
        cached_prompt_tokens: Optional[int] = None
    ) -> "TokenUsage":
        ratio = None
        if cached_prompt_tokens is not None and prompt_tokens > 0:
            ratio = cached_prompt_tokens / prompt_tokens
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens if total_tokens is not None else prompt_tokens + completion_tokens,
            cached_prompt_tokens=cached_prompt_tokens,
            cache_hit_ratio=ratio
        )


class CompletionOptions(BaseModel):
    """Options for a single generation request"""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    model: Optional[str] = None
    conversation_id: Optional[str] = Field(None, description="Passed upstream for prompt-cache affinity")


class CompletionResult(BaseModel):
    """Outcome of a successful generation"""
    content: str
    role: MessageRole = MessageRole.ASSISTANT
    provider: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    attempted_providers: List[str] = Field(default_factory=list)
    fallback_count: int = 0


class ReplyStatus(str, Enum):
    """Outcome of handling an inbound message"""
    COMPLETED = "completed"
    DROPPED = "dropped"
    FAILED = "failed"


class ChatReply(BaseModel):
    """What the chat boundary sends back to the conversation"""
    status: ReplyStatus
    content: str = ""
    provider: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None
