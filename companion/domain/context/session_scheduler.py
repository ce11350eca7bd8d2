from typing import Dict, Optional, Callable
from datetime import datetime, timedelta
from pydantic import BaseModel
import asyncio
import structlog

from companion.domain.concurrency.conversation_gate import ConversationGate
from companion.domain.context.memory.runtime_memory import RuntimeMemory
from companion.domain.context.memory.scoped_memory_store import ScopedMemoryStore
from companion.domain.errors import CompanionError
from companion.domain.models.conversation import Session
from companion.domain.models.memory import MemoryScope, MemoryType
from companion.domain.ports import SessionRepository
from companion.infrastructure.config.settings import SessionSettings
from companion.infrastructure.observability.logging import conversation_logger, metrics

logger = structlog.get_logger(__name__)


class SessionRefreshResult(BaseModel):
    session: Session
    refreshed: bool = False
    memory_context: Optional[str] = None
    extracted_memories: int = 0


class SessionScheduler:
    """Detects stale or oversized sessions and refreshes or compacts them"""

    def __init__(
        self,
        repository: SessionRepository,
        runtime_memory: RuntimeMemory,
        memory: Optional[ScopedMemoryStore] = None,
        settings: Optional[SessionSettings] = None,
        gate: Optional[ConversationGate] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.repository = repository
        self.gate = gate
        self.runtime_memory = runtime_memory
        self.memory = memory
        self.settings = settings or SessionSettings()
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def is_stale(self, session: Session, now: Optional[datetime] = None) -> bool:
        if not session.messages:
            return False
        now = now or self._clock()
        return now - session.last_activity_at > timedelta(minutes=self.settings.inactivity_timeout_minutes)

    def needs_compaction(self, session: Session) -> bool:
        return len(session.context_messages()) > self.settings.max_messages_before_compaction

    async def ensure_fresh(
        self,
        conversation_id: str,
        user_id: Optional[str] = None,
        server_id: Optional[str] = None
    ) -> SessionRefreshResult:
        """Load the conversation's session, refreshing it first if it went stale"""

        session = await self.repository.get_or_create_session(conversation_id, server_id)
        if self.settings.enable_auto_refresh and self.is_stale(session):
            return await self.refresh_session(session, user_id, server_id)
        return SessionRefreshResult(session=session)

    async def refresh_session(
        self,
        session: Session,
        user_id: Optional[str] = None,
        server_id: Optional[str] = None
    ) -> SessionRefreshResult:
        """Move a stale session's context into long-term memory and start clean"""

        logger.info("Refreshing stale session", session_id=session.id, last_activity_at=session.last_activity_at.isoformat())
        included = session.context_messages()
        extracted = 0

        if self.memory is not None and self.settings.extract_memories_on_refresh and included:
            try:
                extracted = len(await self.memory.extract_from_messages(session.id, included, user_id, server_id))
            except Exception as e:
                logger.warning("Memory extraction on refresh failed", session_id=session.id, error=str(e))

        if self.memory is not None and self.settings.create_summary_on_refresh and session.context.strip():
            try:
                await self.memory.create(
                    session_id=session.id,
                    content=session.context,
                    memory_type=MemoryType.SUMMARY,
                    user_id=user_id,
                    server_id=server_id,
                    scope=MemoryScope.SESSION
                )
                extracted += 1
            except CompanionError as e:
                logger.info("Session summary not stored", session_id=session.id, reason=str(e))

        if included:
            await self.repository.exclude_messages(session.id, [m.id for m in included])
        await self.repository.update_context(session.id, "", 0)
        session = await self.repository.touch(session.id)
        await self.runtime_memory.evict(session.id)

        memory_context = None
        if self.memory is not None:
            memory_context = await self.memory.query_combined(session.id, user_id, server_id)

        metrics.increment_counter("session.refreshed")
        return SessionRefreshResult(
            session=session,
            refreshed=True,
            memory_context=memory_context,
            extracted_memories=extracted
        )

    async def compact_session(self, session_id: str, messages_to_keep: Optional[int] = None) -> int:
        """Exclude all but the most recent messages, keeping whole exchanges"""

        keep = self.settings.messages_to_keep_after_compaction if messages_to_keep is None else messages_to_keep
        session = await self.repository.get_session(session_id)
        if session is None:
            return 0

        included = session.context_messages()
        excess = len(included) - keep
        excess -= excess % 2
        if excess <= 0:
            return 0

        removed = included[:excess]
        if self.memory is not None and self.settings.extract_memories_on_compaction:
            try:
                await self.memory.extract_from_messages(session.id, removed, server_id=session.server_id)
            except Exception as e:
                logger.warning("Memory extraction on compaction failed", session_id=session.id, error=str(e))

        session = await self.repository.exclude_messages(session.id, [m.id for m in removed])
        await self.runtime_memory.load(session.id, session.context_messages())
        conversation_logger.log_compaction(session.id, excess, 0, consolidated=False)
        return excess

    async def _compact_when_idle(self, session: Session) -> int:
        """Compact only while no reply is being generated for the conversation"""

        if self.gate is None:
            return await self.compact_session(session.id)
        async with self.gate.admit(session.conversation_id) as admission:
            if not admission.admitted:
                return 0
            return await self.compact_session(session.id)

    async def run_once(self) -> Dict[str, int]:
        """One pass over all sessions plus memory cleanup"""

        compacted = 0
        evicted = 0
        now = self._clock()
        for session in await self.repository.list_sessions():
            if self.needs_compaction(session):
                try:
                    if await self._compact_when_idle(session):
                        compacted += 1
                except Exception as e:
                    logger.error("Scheduled compaction failed", session_id=session.id, error=str(e))

            # Idle conversations reload from the repository on their next message
            if self.is_stale(session, now) and await self.runtime_memory.evict(session.id):
                evicted += 1

        cleaned = 0
        if self.memory is not None:
            try:
                cleaned = await self.memory.cleanup()
            except Exception as e:
                logger.error("Memory cleanup failed", error=str(e))

        return {"compacted_sessions": compacted, "evicted_sessions": evicted, "cleaned_memories": cleaned}

    async def _loop(self):
        while True:
            try:
                await asyncio.sleep(self.settings.check_interval_seconds)
                summary = await self.run_once()
                logger.debug("Session maintenance pass", **summary)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                conversation_logger.log_background_failure("session_maintenance", e)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
