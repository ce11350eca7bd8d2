from typing import List, Optional
import structlog

from companion.domain.concurrency.conversation_gate import ConversationGate
from companion.domain.context.history_compactor import HistoryCompactor
from companion.domain.context.memory.runtime_memory import RuntimeMemory
from companion.domain.context.memory.scoped_memory_store import ScopedMemoryStore
from companion.domain.context.session_scheduler import SessionScheduler
from companion.domain.context.tokens import TokenCounter
from companion.domain.errors import AllProvidersExhausted, CompactionFailure
from companion.domain.generation.prompt_builder import PromptBuilder
from companion.domain.generation.provider_executor import ProviderFallbackExecutor
from companion.domain.models.conversation import (
    ChatReply, CompletionOptions, ConversationMessage, ReplyStatus, ServerMeta, Session
)
from companion.domain.orchestration.background import BackgroundTaskRunner
from companion.domain.ports import SessionRepository
from companion.domain.reasoning.reasoning_loop import ReasoningLoop, ReasoningRequest
from companion.infrastructure.observability.logging import conversation_logger, metrics

logger = structlog.get_logger(__name__)

APOLOGY_MESSAGE = "Sorry, I'm having trouble coming up with a reply right now. Please try again in a moment."


class ConversationOrchestrator:
    """Turns an inbound message into a reply for one conversation"""

    def __init__(
        self,
        gate: ConversationGate,
        repository: SessionRepository,
        runtime_memory: RuntimeMemory,
        executor: ProviderFallbackExecutor,
        prompt_builder: PromptBuilder,
        compactor: HistoryCompactor,
        scheduler: SessionScheduler,
        memory: Optional[ScopedMemoryStore] = None,
        reasoning: Optional[ReasoningLoop] = None,
        background: Optional[BackgroundTaskRunner] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        token_counter: Optional[TokenCounter] = None
    ):
        self.gate = gate
        self.repository = repository
        self.runtime_memory = runtime_memory
        self.executor = executor
        self.prompt_builder = prompt_builder
        self.compactor = compactor
        self.scheduler = scheduler
        self.memory = memory
        self.reasoning = reasoning
        self.background = background or BackgroundTaskRunner()
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.tokens = token_counter or TokenCounter()

    async def handle_message(
        self,
        conversation_id: str,
        user_id: Optional[str],
        content: str,
        server_id: Optional[str] = None
    ) -> ChatReply:
        """Reply to one message. Overlapping messages are dropped, never queued."""

        with structlog.contextvars.bound_contextvars(conversation_id=conversation_id):
            async with self.gate.admit(conversation_id) as admission:
                if not admission.admitted:
                    logger.info("Dropped overlapping message", reason=admission.status.value)
                    return ChatReply(status=ReplyStatus.DROPPED)
                return await self._reply(conversation_id, user_id, content, server_id)

    async def _reply(
        self,
        conversation_id: str,
        user_id: Optional[str],
        content: str,
        server_id: Optional[str]
    ) -> ChatReply:
        refresh = await self.scheduler.ensure_fresh(conversation_id, user_id, server_id)
        session = refresh.session
        server_meta = await self._server_meta(server_id)
        history = await self._history(session)

        memory_context = None
        if self.memory is not None:
            memory_context = await self.memory.query_combined(session.id, user_id, server_id, content)
        memory_context = memory_context or refresh.memory_context

        enrichment = None
        if self.reasoning is not None and self.reasoning.should_reason(content):
            trace = await self.reasoning.run(
                ReasoningRequest(
                    message=content,
                    session_id=session.id,
                    user_id=user_id,
                    server_id=server_id,
                    history=history
                ),
                memory_context
            )
            enrichment = trace.to_context_block()

        user_message = ConversationMessage.user(content)
        messages = self.prompt_builder.build(
            history,
            user_message,
            persona=server_meta.persona if server_meta else None,
            summary=session.context,
            memory_context=memory_context,
            enrichment=enrichment
        )
        options = CompletionOptions(
            max_tokens=self.max_output_tokens,
            temperature=self.temperature,
            model=(server_meta.preferred_model if server_meta else None) or session.preferred_model,
            conversation_id=conversation_id
        )

        try:
            result = await self.executor.execute(
                messages,
                options,
                preferred_provider=server_meta.preferred_provider if server_meta else None
            )
        except AllProvidersExhausted as e:
            logger.error(
                "All providers exhausted",
                last_provider=e.last_provider,
                last_error=str(e.last_error) if e.last_error else None,
                attempted=e.attempted
            )
            metrics.increment_counter("conversation.failed")
            return ChatReply(status=ReplyStatus.FAILED, content=APOLOGY_MESSAGE)

        assistant_message = ConversationMessage.assistant(result.content)
        session = await self.repository.append_exchange(session.id, user_message, assistant_message)
        await self.runtime_memory.append(session.id, user_message, assistant_message)

        if self.compactor.should_compact(result.usage):
            await self._compact(session)

        if self.memory is not None:
            self.background.spawn(
                self.memory.extract_from_messages(
                    session.id, [user_message, assistant_message], user_id, server_id, force=True
                ),
                name=f"memory_extraction:{session.id}"
            )

        metrics.increment_counter("conversation.replies")
        return ChatReply(
            status=ReplyStatus.COMPLETED,
            content=result.content,
            provider=result.provider,
            model=result.model,
            usage=result.usage
        )

    async def _server_meta(self, server_id: Optional[str]) -> Optional[ServerMeta]:
        if not server_id:
            return None
        return await self.repository.get_server_meta(server_id)

    async def _history(self, session: Session) -> List[ConversationMessage]:
        """Short-term cache first, persisted context on a miss"""

        cached = await self.runtime_memory.get_history(session.id)
        if cached is not None:
            return cached
        history = session.context_messages()
        await self.runtime_memory.load(session.id, history)
        return history

    async def _compact(self, session: Session):
        """Summarize old turns. A failure leaves the history as it is."""

        try:
            result = await self.compactor.compact(session.context_messages(), session.context)
        except CompactionFailure as e:
            logger.warning("History compaction failed", session_id=session.id, error=str(e))
            metrics.increment_counter("compaction.failures")
            return

        if result.removed_count == 0:
            return

        # Removed turns already went through per-turn extraction
        await self.repository.exclude_messages(session.id, [m.id for m in result.removed_messages])
        session = await self.repository.update_context(
            session.id, result.summary, self.tokens.count(result.summary)
        )
        await self.runtime_memory.load(session.id, session.context_messages())
        metrics.increment_counter("compaction.completed")
        conversation_logger.log_compaction(
            session.id, result.removed_count, result.remaining_tokens, result.consolidated
        )

    async def exchange(self, prompt: str, persona: Optional[str] = None) -> str:
        """Stateless one-off request with the configured persona"""

        messages = [
            self.prompt_builder.system_message(persona),
            ConversationMessage.user(prompt)
        ]
        result = await self.executor.execute(
            messages,
            CompletionOptions(max_tokens=self.max_output_tokens, temperature=self.temperature)
        )
        return result.content
