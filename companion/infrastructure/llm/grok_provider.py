from typing import Dict, Any, List, Optional

from companion.domain.models.conversation import ConversationMessage, CompletionOptions
from companion.infrastructure.llm.openai_provider import OpenAIProvider


class GrokProvider(OpenAIProvider):
    """xAI Grok. Cache affinity goes through the conversation header."""

    def headers(self, options: Optional[CompletionOptions] = None) -> Dict[str, str]:
        headers = super().headers(options)
        if options is not None and options.conversation_id:
            headers["x-grok-conv-id"] = options.conversation_id
        return headers

    def build_payload(self, messages: List[ConversationMessage], options: CompletionOptions) -> Dict[str, Any]:
        payload = super().build_payload(messages, options)
        payload.pop("prompt_cache_key", None)
        return payload
