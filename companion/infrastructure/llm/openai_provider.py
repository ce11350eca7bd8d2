from typing import Dict, Any, List, Optional

from companion.domain.errors import ProviderError
from companion.domain.models.conversation import (
    ConversationMessage, CompletionOptions, CompletionResult, TokenUsage
)
from companion.infrastructure.llm.base_provider import HttpChatProvider


class OpenAIProvider(HttpChatProvider):
    """OpenAI chat completions, also used for OpenAI-compatible backends"""

    def build_payload(self, messages: List[ConversationMessage], options: CompletionOptions) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model_for(options),
            "messages": [m.to_wire() for m in messages],
            "temperature": self.temperature_for(options),
        }
        if options.max_tokens:
            payload["max_tokens"] = options.max_tokens
        if options.conversation_id:
            payload["prompt_cache_key"] = options.conversation_id
        return payload

    def parse_usage(self, data: Dict[str, Any]) -> TokenUsage:
        usage = data.get("usage") or {}
        details = usage.get("prompt_tokens_details") or {}
        return TokenUsage.build(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens"),
            cached_prompt_tokens=details.get("cached_tokens")
        )

    def parse_response(self, data: Dict[str, Any], model: str) -> CompletionResult:
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(self.name, "response has no choices")

        choice = choices[0]
        content: Optional[str] = (choice.get("message") or {}).get("content")
        if content is None:
            raise ProviderError(self.name, "response has no message content")

        return CompletionResult(
            content=content.strip(),
            provider=self.name,
            model=data.get("model") or model,
            usage=self.parse_usage(data),
            metadata={
                "response_id": data.get("id"),
                "finish_reason": choice.get("finish_reason"),
            }
        )

    async def complete(
        self, messages: List[ConversationMessage], options: CompletionOptions
    ) -> CompletionResult:
        payload = self.build_payload(messages, options)
        data = await self._post("/chat/completions", payload, self.headers(options))
        return self.parse_response(data, payload["model"])
