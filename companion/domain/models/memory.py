from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum
from uuid import uuid4


class MemoryScope(str, Enum):
    """Breadth of a memory's validity"""
    SESSION = "session"
    USER = "user"
    SERVER = "server"


class MemoryType(str, Enum):
    """Kind of remembered content"""
    FACT = "fact"
    PREFERENCE = "preference"
    INSTRUCTION = "instruction"
    CONTEXT = "context"
    SUMMARY = "summary"


class MemoryRecord(BaseModel):
    """Long-term semantic memory"""
    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    user_id: Optional[str] = None
    server_id: Optional[str] = None
    scope: MemoryScope = MemoryScope.SESSION
    content: str
    memory_type: MemoryType = MemoryType.CONTEXT
    importance: float = Field(default=0.5, description="Retention worth in [0, 1]")
    estimated_tokens: int = 0
    embedding: List[float] = Field(default_factory=list, repr=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("importance")
    @classmethod
    def clamp_importance(cls, value: float) -> float:
        return max(0.0, min(1.0, value))

    def to_payload(self) -> Dict[str, Any]:
        """Vector-store payload for this record (everything but the embedding)"""
        payload = self.model_dump(mode="json", exclude={"embedding"})
        # Numeric timestamps keep range filters portable across stores
        payload["created_ts"] = self.created_at.timestamp()
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "MemoryRecord":
        data = {k: v for k, v in payload.items() if k != "created_ts"}
        return cls.model_validate(data)


class MemoryMatch(BaseModel):
    """A memory returned by similarity search"""
    record: MemoryRecord
    score: float
    scope: MemoryScope


class MemoryFilter(BaseModel):
    """Payload filter understood by every vector store"""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    server_id: Optional[str] = None
    scope: Optional[MemoryScope] = None
    exclude_session_id: Optional[str] = None
    created_before: Optional[datetime] = None
    max_importance: Optional[float] = None

    def matches(self, payload: Dict[str, Any]) -> bool:
        """Evaluate this filter against a stored payload"""
        if self.session_id is not None and payload.get("session_id") != self.session_id:
            return False
        if self.user_id is not None and payload.get("user_id") != self.user_id:
            return False
        if self.server_id is not None and payload.get("server_id") != self.server_id:
            return False
        if self.scope is not None and payload.get("scope") != self.scope.value:
            return False
        if self.exclude_session_id is not None and payload.get("session_id") == self.exclude_session_id:
            return False
        if self.created_before is not None and payload.get("created_ts", 0) >= self.created_before.timestamp():
            return False
        if self.max_importance is not None and payload.get("importance", 0) > self.max_importance:
            return False
        return True


class MemoryStats(BaseModel):
    """Aggregate view over a set of memories"""
    total_memories: int = 0
    total_tokens: int = 0
    average_importance: float = 0.0
    type_distribution: Dict[str, int] = Field(default_factory=dict)
    oldest_memory: Optional[datetime] = None
    newest_memory: Optional[datetime] = None
