from typing import Dict, Any, List, Optional

from companion.domain.errors import ProviderError
from companion.domain.models.conversation import (
    ConversationMessage, CompletionOptions, CompletionResult, MessageRole, TokenUsage
)
from companion.infrastructure.llm.base_provider import HttpChatProvider


class GeminiProvider(HttpChatProvider):
    """Google Gemini generateContent API"""

    def headers(self, options: Optional[CompletionOptions] = None) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or ""}

    def build_payload(self, messages: List[ConversationMessage], options: CompletionOptions) -> Dict[str, Any]:
        # Only the leading system prompt becomes the system instruction; later
        # system notes stay in place as user-side text
        leading = []
        index = 0
        while index < len(messages) and messages[index].role == MessageRole.SYSTEM:
            leading.append(messages[index].content)
            index += 1

        contents = []
        for message in messages[index:]:
            role = "model" if message.role == MessageRole.ASSISTANT else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        generation_config: Dict[str, Any] = {"temperature": self.temperature_for(options)}
        if options.max_tokens:
            generation_config["maxOutputTokens"] = options.max_tokens

        payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
        if leading:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(leading)}]}
        return payload

    def parse_response(self, data: Dict[str, Any], model: str) -> CompletionResult:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError(self.name, "response has no candidates")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text:
            raise ProviderError(self.name, "response has no text")

        usage = data.get("usageMetadata") or {}
        return CompletionResult(
            content=text.strip(),
            provider=self.name,
            model=data.get("modelVersion") or model,
            usage=TokenUsage.build(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount"),
                cached_prompt_tokens=usage.get("cachedContentTokenCount")
            ),
            metadata={"finish_reason": candidates[0].get("finishReason")}
        )

    async def complete(
        self, messages: List[ConversationMessage], options: CompletionOptions
    ) -> CompletionResult:
        model = self.model_for(options)
        payload = self.build_payload(messages, options)
        data = await self._post(f"/models/{model}:generateContent", payload, self.headers(options))
        return self.parse_response(data, model)
