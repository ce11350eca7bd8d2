from typing import Dict, List, Optional, Iterable
from datetime import datetime
import asyncio
import time
import structlog

from companion.domain.errors import AllProvidersExhausted, ProviderTimeout, ProviderUnavailable
from companion.domain.models.conversation import (
    ConversationMessage, CompletionOptions, CompletionResult
)
from companion.domain.generation.prompt_builder import PromptBuilder
from companion.domain.ports import ChatProvider
from companion.infrastructure.observability.langfuse_tracing import GenerationTracer
from companion.infrastructure.observability.logging import conversation_logger, metrics

logger = structlog.get_logger(__name__)

SIDE_CALL_TEMPERATURE = 0.2


class ProviderFallbackExecutor:
    """Tries an ordered list of LLM backends until one succeeds"""

    def __init__(
        self,
        providers: Iterable[ChatProvider],
        default_provider: str,
        fallback_order: Optional[List[str]] = None,
        enable_fallback: bool = True,
        tracer: Optional[GenerationTracer] = None
    ):
        self.providers: Dict[str, ChatProvider] = {p.name.lower(): p for p in providers}
        self.default_provider = default_provider
        self.fallback_order = list(fallback_order or [])
        self.enable_fallback = enable_fallback
        self.tracer = tracer or GenerationTracer()

    def get_provider(self, name: str) -> Optional[ChatProvider]:
        return self.providers.get(name.lower())

    def provider_order(self, preferred_provider: Optional[str] = None) -> List[str]:
        """Preferred first, then the fallback order, then the default if still empty"""

        order: List[str] = []
        seen = set()

        def add(name: Optional[str]):
            if name and name.lower() not in seen:
                seen.add(name.lower())
                order.append(name)

        add(preferred_provider)
        for name in self.fallback_order:
            add(name)
        if not order:
            add(self.default_provider)
        return order

    async def _ensure_ready(self, name: str) -> ChatProvider:
        """Resolve a candidate or raise ProviderUnavailable"""

        provider = self.get_provider(name)
        if provider is None:
            raise ProviderUnavailable(name, "not registered")
        if not provider.enabled or not provider.is_configured:
            raise ProviderUnavailable(provider.name, "disabled or not configured")
        try:
            available = await provider.is_available()
        except Exception as e:
            raise ProviderUnavailable(provider.name, f"probe raised: {e}") from e
        if not available:
            raise ProviderUnavailable(provider.name, "probe failed")
        return provider

    async def execute(
        self,
        messages: List[ConversationMessage],
        options: Optional[CompletionOptions] = None,
        preferred_provider: Optional[str] = None
    ) -> CompletionResult:
        """Generate a completion, falling back across providers"""

        options = options or CompletionOptions()
        order = self.provider_order(preferred_provider)
        attempted: List[str] = []
        last_provider: Optional[str] = None
        last_error: Optional[BaseException] = None

        for index, name in enumerate(order):
            is_last = index == len(order) - 1
            try:
                provider = await self._ensure_ready(name)
            except ProviderUnavailable as e:
                logger.info("Skipping provider", provider=e.provider, reason=e.reason)
                metrics.increment_counter("provider.unavailable", tags={"provider": e.provider})
                continue

            call_options = options
            if options.model and preferred_provider and provider.name.lower() != preferred_provider.lower():
                # A model pinned for the preferred backend means nothing to the others
                call_options = options.model_copy(update={"model": None})

            attempted.append(provider.name)
            started_at = datetime.utcnow()
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    provider.complete(messages, call_options),
                    timeout=provider.timeout_seconds
                )
            except asyncio.TimeoutError:
                error: BaseException = ProviderTimeout(provider.name, provider.timeout_seconds)
            except Exception as e:
                error = e
            else:
                duration_ms = (time.perf_counter() - start) * 1000
                result.provider = provider.name
                result.attempted_providers = list(attempted)
                result.fallback_count = len(attempted) - 1
                conversation_logger.log_provider_attempt(
                    provider.name, True, duration_ms=duration_ms, model=result.model
                )
                metrics.record_latency("provider.complete", duration_ms, tags={"provider": provider.name})
                if result.fallback_count:
                    metrics.increment_counter("provider.fallbacks", result.fallback_count)
                self.tracer.trace_generation(messages, result, started_at, options.conversation_id)
                return result

            duration_ms = (time.perf_counter() - start) * 1000
            last_provider, last_error = provider.name, error
            conversation_logger.log_provider_attempt(
                provider.name, False, duration_ms=duration_ms, error=str(error)
            )
            metrics.increment_counter("provider.failures", tags={"provider": provider.name})

            if not self.enable_fallback or is_last:
                raise AllProvidersExhausted(provider.name, error, attempted)

        raise AllProvidersExhausted(last_provider, last_error, attempted)

    async def side_completion(self, prompt: str, max_tokens: int) -> str:
        """Persona-free request for summaries, thoughts and critiques"""

        result = await self.execute(
            PromptBuilder.side_request(prompt),
            CompletionOptions(max_tokens=max_tokens, temperature=SIDE_CALL_TEMPERATURE)
        )
        return result.content
