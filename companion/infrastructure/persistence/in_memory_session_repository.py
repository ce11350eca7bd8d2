from typing import Dict, List, Optional, Callable
import asyncio
from datetime import datetime

from companion.domain.models.conversation import ConversationMessage, Session, ServerMeta


class InMemorySessionRepository:
    """Process-local session persistence, one active session per conversation"""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self.sessions: Dict[str, Session] = {}
        self.active_by_conversation: Dict[str, str] = {}
        self.server_meta: Dict[str, ServerMeta] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session {session_id}")
        return session

    async def get_or_create_session(self, conversation_id: str, server_id: Optional[str] = None) -> Session:
        async with self._lock:
            session_id = self.active_by_conversation.get(conversation_id)
            if session_id is None:
                now = self._clock()
                session = Session(
                    conversation_id=conversation_id,
                    server_id=server_id,
                    created_at=now,
                    last_activity_at=now
                )
                self.sessions[session.id] = session
                self.active_by_conversation[conversation_id] = session.id
                return session.model_copy(deep=True)
            return self.sessions[session_id].model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            session = self.sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def list_sessions(self) -> List[Session]:
        async with self._lock:
            return [s.model_copy(deep=True) for s in self.sessions.values()]

    async def append_exchange(
        self,
        session_id: str,
        user_message: ConversationMessage,
        assistant_message: ConversationMessage
    ) -> Session:
        async with self._lock:
            session = self._get(session_id)
            session.messages.extend([user_message, assistant_message])
            session.last_activity_at = self._clock()
            return session.model_copy(deep=True)

    async def exclude_messages(self, session_id: str, message_ids: List[str]) -> Session:
        """Drop messages from context without deleting them"""

        async with self._lock:
            session = self._get(session_id)
            excluded = set(message_ids)
            session.messages = [
                m.excluded() if m.id in excluded else m
                for m in session.messages
            ]
            return session.model_copy(deep=True)

    async def update_context(self, session_id: str, context: str, context_tokens: int) -> Session:
        async with self._lock:
            session = self._get(session_id)
            session.context = context
            session.context_tokens = context_tokens
            return session.model_copy(deep=True)

    async def touch(self, session_id: str) -> Session:
        async with self._lock:
            session = self._get(session_id)
            session.last_activity_at = self._clock()
            return session.model_copy(deep=True)

    async def set_server_meta(self, meta: ServerMeta):
        async with self._lock:
            self.server_meta[meta.server_id] = meta

    async def get_server_meta(self, server_id: str) -> Optional[ServerMeta]:
        async with self._lock:
            return self.server_meta.get(server_id)
