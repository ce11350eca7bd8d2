"""Interfaces of the external collaborators the conversation core talks to.

Every collaborator is consumed through one of these protocols, so the
reasoning loop, the provider executor and the memory adapter never need a
reference to the orchestrator or to each other.
"""
from typing import Dict, Any, List, Optional, Protocol, Tuple, Awaitable, Callable
from pydantic import BaseModel, Field

from companion.domain.models.conversation import (
    ConversationMessage, CompletionOptions, CompletionResult, Session, ServerMeta
)
from companion.domain.models.memory import MemoryFilter


# Side LLM call used by the compactor and the reasoning loop: (prompt, max_tokens) -> text
SideCompletion = Callable[[str, int], Awaitable[str]]


class ChatProvider(Protocol):
    name: str
    enabled: bool
    timeout_seconds: float

    @property
    def is_configured(self) -> bool: ...

    async def is_available(self) -> bool: ...

    async def complete(
        self, messages: List[ConversationMessage], options: CompletionOptions
    ) -> CompletionResult: ...


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> Optional[List[float]]: ...


class VectorMemoryStore(Protocol):
    async def upsert(self, point_id: str, vector: List[float], payload: Dict[str, Any]) -> None: ...

    async def query_similar(
        self,
        vector: List[float],
        memory_filter: MemoryFilter,
        top_k: int,
        min_score: float
    ) -> List[Tuple[Dict[str, Any], float]]: ...

    async def scroll(self, memory_filter: MemoryFilter, limit: int = 1000) -> List[Dict[str, Any]]: ...

    async def delete(self, point_ids: List[str]) -> int: ...


class WebSearchResultItem(BaseModel):
    title: str
    snippet: str = ""
    url: str = ""


class WebSearchResult(BaseModel):
    query: str
    items: List[WebSearchResultItem] = Field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


class WebSearchProvider(Protocol):
    async def search(self, query: str, max_results: int = 5) -> WebSearchResult: ...


class SessionRepository(Protocol):
    async def get_or_create_session(self, conversation_id: str, server_id: Optional[str] = None) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def list_sessions(self) -> List[Session]: ...

    async def append_exchange(
        self, session_id: str, user_message: ConversationMessage, assistant_message: ConversationMessage
    ) -> Session: ...

    async def exclude_messages(self, session_id: str, message_ids: List[str]) -> Session: ...

    async def update_context(self, session_id: str, context: str, context_tokens: int) -> Session: ...

    async def touch(self, session_id: str) -> Session: ...

    async def get_server_meta(self, server_id: str) -> Optional[ServerMeta]: ...
