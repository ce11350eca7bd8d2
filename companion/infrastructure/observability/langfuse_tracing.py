from typing import Dict, Any, List, Optional
from datetime import datetime
import structlog
from langfuse import Langfuse

from companion.domain.models.conversation import ConversationMessage, CompletionResult

logger = structlog.get_logger(__name__)


class GenerationTracer:
    """Forwards completed generations to Langfuse when keys are configured"""

    def __init__(
        self,
        public_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        host: Optional[str] = None,
        client: Optional[Langfuse] = None
    ):
        self.langfuse = client
        if self.langfuse is None and public_key and secret_key:
            self.langfuse = Langfuse(
                public_key=public_key,
                secret_key=secret_key,
                host=host
            )

    @property
    def enabled(self) -> bool:
        return self.langfuse is not None

    def trace_generation(
        self,
        messages: List[ConversationMessage],
        result: CompletionResult,
        started_at: datetime,
        conversation_id: Optional[str] = None,
        name: str = "conversation_reply"
    ):
        """Record one successful generation. Never raises."""

        if not self.enabled:
            return

        try:
            trace = self.langfuse.trace(
                name=name,
                session_id=conversation_id,
                metadata={
                    "provider": result.provider,
                    "fallback_count": result.fallback_count,
                    "attempted_providers": result.attempted_providers
                }
            )
            trace.generation(
                name=f"{result.provider}.complete",
                model=result.model,
                input=[m.to_wire() for m in messages],
                output=result.content,
                start_time=started_at,
                end_time=datetime.utcnow(),
                usage={
                    "input": result.usage.prompt_tokens,
                    "output": result.usage.completion_tokens,
                    "total": result.usage.total_tokens
                },
                metadata=self._usage_metadata(result)
            )
        except Exception as e:
            logger.warning("Langfuse tracing failed", error=str(e), provider=result.provider)

    def _usage_metadata(self, result: CompletionResult) -> Dict[str, Any]:
        metadata: Dict[str, Any] = dict(result.metadata)
        if result.usage.cached_prompt_tokens is not None:
            metadata["cached_prompt_tokens"] = result.usage.cached_prompt_tokens
            metadata["cache_hit_ratio"] = result.usage.cache_hit_ratio
        return metadata

    def flush(self):
        if not self.enabled:
            return
        try:
            self.langfuse.flush()
        except Exception as e:
            logger.warning("Langfuse flush failed", error=str(e))
