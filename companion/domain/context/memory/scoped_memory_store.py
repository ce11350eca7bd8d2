from typing import Dict, Any, List, Optional, Callable
from datetime import datetime, timedelta
import structlog

from companion.domain.context.memory.classification import detect_memory_type
from companion.domain.context.tokens import TokenCounter
from companion.domain.errors import (
    BelowImportanceThreshold, CompanionError, EmbeddingUnavailable, MemoryDisabled, MemoryStoreDegraded
)
from companion.domain.models.conversation import ConversationMessage, MessageRole
from companion.domain.models.memory import (
    MemoryFilter, MemoryMatch, MemoryRecord, MemoryScope, MemoryStats, MemoryType
)
from companion.domain.ports import EmbeddingProvider, VectorMemoryStore
from companion.infrastructure.config.settings import MemorySettings
from companion.infrastructure.observability.logging import conversation_logger, metrics

logger = structlog.get_logger(__name__)

SCOPE_HEADINGS = {
    MemoryScope.SESSION: "From this conversation:",
    MemoryScope.USER: "From your previous conversations:",
    MemoryScope.SERVER: "Server shared knowledge:",
}

IMPORTANCE_CUES = ("important", "remember")
SUMMARY_MIN_CHARS = 500
SUMMARY_MAX_CHARS = 1000


class ScopedMemoryStore:
    """Creates and retrieves long-term memories tagged by scope and importance"""

    def __init__(
        self,
        vector_store: VectorMemoryStore,
        embedder: EmbeddingProvider,
        settings: Optional[MemorySettings] = None,
        token_counter: Optional[TokenCounter] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.vector_store = vector_store
        self.embedder = embedder
        self.settings = settings or MemorySettings()
        self.tokens = token_counter or TokenCounter()
        self._clock = clock

    def calculate_importance(
        self,
        content: str,
        memory_type: MemoryType,
        scope: MemoryScope,
        estimated_tokens: int
    ) -> float:
        """Heuristic retention score in [0, 1]"""

        weight = self.settings.type_weights.get(memory_type.value, 0.5)
        score = 0.5 * weight

        if estimated_tokens > 100:
            score += 0.1

        lowered = content.lower()
        if any(cue in lowered for cue in IMPORTANCE_CUES):
            score += 0.2

        if "?" in content:
            score += 0.1

        if scope in (MemoryScope.USER, MemoryScope.SERVER):
            score += self.settings.scope_boost

        return max(0.0, min(1.0, score))

    async def _embed(self, text: str) -> Optional[List[float]]:
        try:
            return await self.embedder.embed(text)
        except Exception as e:
            logger.warning("Embedding call failed", error=str(e))
            return None

    async def create(
        self,
        session_id: str,
        content: str,
        memory_type: MemoryType = MemoryType.CONTEXT,
        user_id: Optional[str] = None,
        server_id: Optional[str] = None,
        scope: MemoryScope = MemoryScope.SESSION,
        importance: Optional[float] = None
    ) -> MemoryRecord:
        """Score, embed and persist one memory"""

        if not self.settings.enabled:
            raise MemoryDisabled("Memory subsystem is disabled")

        content = content.strip()
        estimated_tokens = self.tokens.count(content)
        if importance is None:
            importance = self.calculate_importance(content, memory_type, scope, estimated_tokens)
        else:
            importance = max(0.0, min(1.0, importance))

        if importance < self.settings.min_importance:
            raise BelowImportanceThreshold(importance, self.settings.min_importance)

        embedding = await self._embed(content)
        if not embedding:
            raise EmbeddingUnavailable("No embedding produced for memory content")

        record = MemoryRecord(
            session_id=session_id,
            user_id=user_id,
            server_id=server_id,
            scope=scope,
            content=content,
            memory_type=memory_type,
            importance=importance,
            estimated_tokens=estimated_tokens,
            embedding=embedding,
            created_at=self._clock()
        )

        try:
            await self.vector_store.upsert(record.id, embedding, record.to_payload())
        except Exception as e:
            raise MemoryStoreDegraded(f"Failed to persist memory: {e}") from e

        metrics.increment_counter("memory.created", tags={"scope": scope.value, "type": memory_type.value})
        conversation_logger.log_memory_event(
            "created",
            session_id=session_id,
            details={"memory_id": record.id, "type": memory_type.value, "scope": scope.value, "importance": importance}
        )
        return record

    async def query_similar(
        self,
        query_vector: List[float],
        memory_filter: MemoryFilter,
        top_k: int,
        min_score: Optional[float] = None
    ) -> List[MemoryMatch]:
        threshold = self.settings.similarity_threshold if min_score is None else min_score
        try:
            hits = await self.vector_store.query_similar(query_vector, memory_filter, top_k, threshold)
        except Exception as e:
            raise MemoryStoreDegraded(f"Similarity search failed: {e}") from e

        matches = []
        for payload, score in hits:
            record = MemoryRecord.from_payload(payload)
            matches.append(MemoryMatch(record=record, score=score, scope=record.scope))
        return matches

    def _rank_by_relevance(self, payloads: List[Dict[str, Any]], limit: int) -> List[MemoryMatch]:
        """Importance weighted by recency, for retrieval without a query"""

        now = self._clock()
        matches = []
        for payload in payloads:
            record = MemoryRecord.from_payload(payload)
            age_days = max(0.0, (now - record.created_at).total_seconds() / 86400)
            score = record.importance / (1.0 + age_days / 7.0)
            matches.append(MemoryMatch(record=record, score=score, scope=record.scope))
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    async def _search_scope(
        self,
        query_vector: Optional[List[float]],
        memory_filter: MemoryFilter,
        top_k: int
    ) -> List[MemoryMatch]:
        if top_k <= 0:
            return []
        if query_vector is None:
            try:
                payloads = await self.vector_store.scroll(memory_filter)
            except Exception as e:
                raise MemoryStoreDegraded(f"Memory listing failed: {e}") from e
            return self._rank_by_relevance(payloads, top_k)
        return await self.query_similar(query_vector, memory_filter, top_k)

    async def query_combined(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        server_id: Optional[str] = None,
        query: Optional[str] = None
    ) -> Optional[str]:
        """Render session, user and server memories into one context block.

        Returns None when nothing relevant is found or when the store is
        degraded. Callers proceed without memory context in both cases.
        """

        if not self.settings.enabled:
            return None

        query_vector = None
        if query and query.strip():
            query_vector = await self._embed(query)
            if not query_vector:
                logger.warning("Memory query skipped, embedding unavailable", session_id=session_id)
                return None

        searches = [(MemoryScope.SESSION, MemoryFilter(session_id=session_id), self.settings.session_top_k)]
        if user_id:
            searches.append((
                MemoryScope.USER,
                MemoryFilter(user_id=user_id, exclude_session_id=session_id),
                self.settings.user_top_k
            ))
        if server_id:
            searches.append((
                MemoryScope.SERVER,
                MemoryFilter(server_id=server_id, scope=MemoryScope.SERVER),
                self.settings.server_top_k
            ))

        grouped: Dict[MemoryScope, List[MemoryMatch]] = {}
        seen = set()
        try:
            for scope, memory_filter, top_k in searches:
                for match in await self._search_scope(query_vector, memory_filter, top_k):
                    if match.record.id in seen:
                        continue
                    seen.add(match.record.id)
                    grouped.setdefault(scope, []).append(match)
        except MemoryStoreDegraded as e:
            logger.warning("Memory store degraded, continuing without memories", session_id=session_id, error=str(e))
            metrics.increment_counter("memory.degraded")
            return None

        return self._render(grouped)

    def _render(self, grouped: Dict[MemoryScope, List[MemoryMatch]]) -> Optional[str]:
        budget = self.settings.max_memory_tokens
        used = 0
        sections = []
        exhausted = False

        for scope in (MemoryScope.SESSION, MemoryScope.USER, MemoryScope.SERVER):
            if exhausted:
                break
            lines = []
            for match in grouped.get(scope, []):
                record = match.record
                cost = record.estimated_tokens or self.tokens.count(record.content)
                if used + cost > budget:
                    exhausted = True
                    break
                used += cost
                lines.append(f"- [{record.memory_type.value}] {record.content}")
            if lines:
                sections.append(SCOPE_HEADINGS[scope] + "\n" + "\n".join(lines))

        if not sections:
            return None
        return "\n\n".join(sections)

    async def query_user(
        self,
        user_id: str,
        query: Optional[str] = None,
        max_results: int = 10
    ) -> List[MemoryMatch]:
        """Ranked memories that belong to one user"""

        memory_filter = MemoryFilter(user_id=user_id)
        query_vector = None
        if query and query.strip():
            query_vector = await self._embed(query)
            if not query_vector:
                return []
        try:
            return await self._search_scope(query_vector, memory_filter, max_results)
        except MemoryStoreDegraded as e:
            logger.warning("User memory query failed", user_id=user_id, error=str(e))
            return []

    async def extract_from_messages(
        self,
        session_id: str,
        messages: List[ConversationMessage],
        user_id: Optional[str] = None,
        server_id: Optional[str] = None,
        force: bool = False
    ) -> List[MemoryRecord]:
        """Heuristically turn a slice of conversation into memories"""

        dialogue = [m for m in messages if m.role != MessageRole.SYSTEM and m.content.strip()]
        if not dialogue:
            return []
        if not force and len(dialogue) < self.settings.min_messages_for_memory:
            return []

        candidates = []
        transcript = "\n".join(f"{m.role.value}: {m.content}" for m in dialogue)
        if len(transcript) > SUMMARY_MIN_CHARS:
            candidates.append((transcript[:SUMMARY_MAX_CHARS], MemoryType.SUMMARY, MemoryScope.SESSION))

        personal_scope = MemoryScope.USER if user_id else MemoryScope.SESSION
        for message in dialogue:
            if message.role != MessageRole.USER:
                continue
            memory_type = detect_memory_type(message.content)
            if memory_type is not None:
                candidates.append((message.content, memory_type, personal_scope))

        created = []
        for content, memory_type, scope in candidates:
            try:
                created.append(await self.create(
                    session_id=session_id,
                    content=content,
                    memory_type=memory_type,
                    user_id=user_id,
                    server_id=server_id,
                    scope=scope
                ))
            except CompanionError as e:
                logger.info("Skipped memory candidate", session_id=session_id, type=memory_type.value, reason=str(e))

        if created:
            conversation_logger.log_memory_event("extracted", session_id=session_id, details={"count": len(created)})
        return created

    async def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete old, low-importance memories"""

        now = now or self._clock()
        memory_filter = MemoryFilter(
            created_before=now - timedelta(days=self.settings.retention_days),
            max_importance=self.settings.cleanup_max_importance
        )
        payloads = await self.vector_store.scroll(memory_filter)
        ids = [p["id"] for p in payloads]
        deleted = await self.vector_store.delete(ids) if ids else 0
        if deleted:
            conversation_logger.log_memory_event("cleanup", details={"deleted": deleted})
        return deleted

    async def erase_user(self, user_id: str) -> int:
        """Delete every memory owned by a user"""

        payloads = await self.vector_store.scroll(MemoryFilter(user_id=user_id))
        ids = [p["id"] for p in payloads]
        deleted = await self.vector_store.delete(ids) if ids else 0
        conversation_logger.log_memory_event("erased", details={"user_id": user_id, "deleted": deleted})
        return deleted

    async def stats(self, session_id: Optional[str] = None, user_id: Optional[str] = None) -> MemoryStats:
        payloads = await self.vector_store.scroll(MemoryFilter(session_id=session_id, user_id=user_id))
        if not payloads:
            return MemoryStats()

        records = [MemoryRecord.from_payload(p) for p in payloads]
        distribution: Dict[str, int] = {}
        for record in records:
            distribution[record.memory_type.value] = distribution.get(record.memory_type.value, 0) + 1

        return MemoryStats(
            total_memories=len(records),
            total_tokens=sum(r.estimated_tokens for r in records),
            average_importance=sum(r.importance for r in records) / len(records),
            type_distribution=distribution,
            oldest_memory=min(r.created_at for r in records),
            newest_memory=max(r.created_at for r in records)
        )
