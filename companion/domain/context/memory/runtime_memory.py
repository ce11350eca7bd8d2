from typing import Dict, List, Optional
import asyncio

from companion.domain.models.conversation import ConversationMessage


class RuntimeMemory:
    """Short-term message cache for active sessions"""

    def __init__(self, max_messages: int = 200):
        self.max_messages = max_messages
        self.conversations: Dict[str, List[ConversationMessage]] = {}
        self._lock = asyncio.Lock()

    async def load(self, session_id: str, messages: List[ConversationMessage]):
        """Seed the cache from persisted context"""

        async with self._lock:
            self.conversations[session_id] = [m for m in messages if m.include_in_context][-self.max_messages:]

    async def append(self, session_id: str, *messages: ConversationMessage):
        async with self._lock:
            history = self.conversations.setdefault(session_id, [])
            history.extend(m for m in messages if m.include_in_context)
            if len(history) > self.max_messages:
                self.conversations[session_id] = history[-self.max_messages:]

    async def get_history(self, session_id: str) -> Optional[List[ConversationMessage]]:
        """Cached history, or None on a cache miss"""

        async with self._lock:
            history = self.conversations.get(session_id)
            return list(history) if history is not None else None

    async def evict(self, session_id: str) -> bool:
        """Drop a cached session, reporting whether one was held"""

        async with self._lock:
            return self.conversations.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self.conversations)
