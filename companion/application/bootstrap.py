from typing import List, Optional
import httpx
import structlog

from companion.domain.concurrency.conversation_gate import ConversationGate
from companion.domain.context.history_compactor import HistoryCompactor
from companion.domain.context.memory.runtime_memory import RuntimeMemory
from companion.domain.context.memory.scoped_memory_store import ScopedMemoryStore
from companion.domain.context.session_scheduler import SessionScheduler
from companion.domain.context.tokens import TokenCounter
from companion.domain.generation.prompt_builder import PromptBuilder
from companion.domain.generation.provider_executor import ProviderFallbackExecutor
from companion.domain.orchestration.background import BackgroundTaskRunner
from companion.domain.orchestration.conversation_orchestrator import ConversationOrchestrator
from companion.domain.ports import ChatProvider, EmbeddingProvider, VectorMemoryStore, WebSearchProvider
from companion.domain.reasoning.reasoning_loop import ReasoningLoop
from companion.infrastructure.config.settings import CompanionSettings, get_settings
from companion.infrastructure.embeddings.openai_embedding import OpenAIEmbeddingProvider
from companion.infrastructure.llm.provider_registry import build_providers
from companion.infrastructure.observability.langfuse_tracing import GenerationTracer
from companion.infrastructure.persistence.in_memory_session_repository import InMemorySessionRepository
from companion.infrastructure.search.web_search import build_web_search
from companion.infrastructure.vector.in_memory_store import InMemoryVectorStore
from companion.infrastructure.vector.qdrant_store import QdrantVectorStore

logger = structlog.get_logger(__name__)


class CompanionContainer:
    """Wired application components and their lifecycle"""

    def __init__(
        self,
        settings: CompanionSettings,
        gate: ConversationGate,
        repository: InMemorySessionRepository,
        memory: ScopedMemoryStore,
        executor: ProviderFallbackExecutor,
        scheduler: SessionScheduler,
        background: BackgroundTaskRunner,
        orchestrator: ConversationOrchestrator,
        tracer: GenerationTracer,
        http_client: Optional[httpx.AsyncClient] = None,
        vector_store: Optional[VectorMemoryStore] = None
    ):
        self.settings = settings
        self.gate = gate
        self.repository = repository
        self.memory = memory
        self.executor = executor
        self.scheduler = scheduler
        self.background = background
        self.orchestrator = orchestrator
        self.tracer = tracer
        self.http_client = http_client
        self.vector_store = vector_store

    async def start(self):
        self.gate.start()
        self.scheduler.start()
        logger.info("Companion core started", providers=list(self.executor.providers))

    async def stop(self):
        await self.gate.stop()
        await self.scheduler.stop()
        await self.background.drain()
        self.tracer.flush()
        if isinstance(self.vector_store, QdrantVectorStore):
            await self.vector_store.close()
        if self.http_client is not None:
            await self.http_client.aclose()
        logger.info("Companion core stopped")


def build_container(
    settings: Optional[CompanionSettings] = None,
    providers: Optional[List[ChatProvider]] = None,
    embedder: Optional[EmbeddingProvider] = None,
    vector_store: Optional[VectorMemoryStore] = None,
    web_search: Optional[WebSearchProvider] = None,
    repository: Optional[InMemorySessionRepository] = None,
    token_counter: Optional[TokenCounter] = None
) -> CompanionContainer:
    """Build the object graph. Collaborators can be injected for tests."""

    settings = settings or get_settings()
    http_client = httpx.AsyncClient(timeout=settings.llm.timeout_seconds)

    if providers is None:
        providers = build_providers(settings.llm, client=http_client)
    if embedder is None:
        embedder = OpenAIEmbeddingProvider(settings.embedding, client=http_client)
    if vector_store is None:
        if settings.vector_store.backend == "qdrant":
            vector_store = QdrantVectorStore(
                collection=settings.vector_store.collection,
                vector_size=settings.vector_store.vector_size,
                host=settings.vector_store.host,
                port=settings.vector_store.port,
                api_key=settings.vector_store.api_key,
                https=settings.vector_store.https
            )
        else:
            vector_store = InMemoryVectorStore()
    if web_search is None:
        web_search = build_web_search(settings.web_search, client=http_client)
    repository = repository or InMemorySessionRepository()

    tokens = token_counter or TokenCounter()
    tracer = GenerationTracer(
        public_key=settings.tracing.public_key,
        secret_key=settings.tracing.secret_key,
        host=settings.tracing.host
    )
    gate = ConversationGate(
        duplicate_window_seconds=settings.gate.duplicate_window_seconds,
        idle_eviction_seconds=settings.gate.idle_eviction_seconds,
        sweep_interval_seconds=settings.gate.sweep_interval_seconds,
        shard_count=settings.gate.shard_count
    )
    executor = ProviderFallbackExecutor(
        providers,
        default_provider=settings.llm.default_provider,
        fallback_order=settings.llm.fallback_order,
        enable_fallback=settings.llm.enable_fallback,
        tracer=tracer
    )
    memory = ScopedMemoryStore(vector_store, embedder, settings.memory, token_counter=tokens)
    runtime_memory = RuntimeMemory()
    scheduler = SessionScheduler(
        repository,
        runtime_memory,
        memory=memory,
        settings=settings.memory.session,
        gate=gate
    )
    compactor = HistoryCompactor(executor.side_completion, settings.history.max_tokens, token_counter=tokens)
    reasoning = ReasoningLoop(
        executor.side_completion,
        settings.reasoning,
        memory=memory,
        web_search=web_search,
        explicit_importance=settings.memory.explicit_importance,
        web_search_max_results=settings.web_search.max_results
    )
    background = BackgroundTaskRunner()
    orchestrator = ConversationOrchestrator(
        gate=gate,
        repository=repository,
        runtime_memory=runtime_memory,
        executor=executor,
        prompt_builder=PromptBuilder(settings.llm.global_system_message),
        compactor=compactor,
        scheduler=scheduler,
        memory=memory,
        reasoning=reasoning,
        background=background,
        temperature=settings.llm.temperature,
        max_output_tokens=settings.llm.max_output_tokens,
        token_counter=tokens
    )

    return CompanionContainer(
        settings=settings,
        gate=gate,
        repository=repository,
        memory=memory,
        executor=executor,
        scheduler=scheduler,
        background=background,
        orchestrator=orchestrator,
        tracer=tracer,
        http_client=http_client,
        vector_store=vector_store
    )
