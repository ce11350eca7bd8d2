import asyncio
import re
from typing import Any, Callable, List, Optional, Union
from zlib import crc32

import pytest

from companion.domain.context.memory.scoped_memory_store import ScopedMemoryStore
from companion.domain.context.tokens import TokenCounter
from companion.domain.errors import ProviderError
from companion.domain.models.conversation import (
    CompletionOptions, CompletionResult, ConversationMessage, TokenUsage
)
from companion.infrastructure.config.settings import MemorySettings
from companion.infrastructure.observability.logging import metrics
from companion.infrastructure.vector.in_memory_store import InMemoryVectorStore


class WordCounter(TokenCounter):
    """One token per whitespace-separated word, no tokenizer download"""

    def count(self, text: Optional[str]) -> int:
        return len(text.split()) if text else 0


Reply = Union[str, Exception, Callable[[List[ConversationMessage], CompletionOptions], Any]]


class FakeProvider:
    def __init__(
        self,
        name: str,
        replies: Optional[List[Reply]] = None,
        available: bool = True,
        enabled: bool = True,
        configured: bool = True,
        timeout_seconds: float = 5.0,
        delay: float = 0.0,
        usage: Optional[TokenUsage] = None,
    ) -> None:
        self.name = name
        self.replies = list(replies or ["ok"])
        self.available = available
        self.enabled = enabled
        self.configured = configured
        self.timeout_seconds = timeout_seconds
        self.delay = delay
        self.usage = usage or TokenUsage.build(10, 5)
        self.calls: List[List[ConversationMessage]] = []
        self.options: List[CompletionOptions] = []
        self.probes = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def is_available(self) -> bool:
        self.probes += 1
        if isinstance(self.available, Exception):
            raise self.available
        return self.available

    async def complete(self, messages: List[ConversationMessage], options: CompletionOptions) -> CompletionResult:
        self.calls.append(list(messages))
        self.options.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = await reply(messages, options)
        return CompletionResult(content=reply, provider=self.name, model=f"{self.name.lower()}-model", usage=self.usage)


def failing(name: str) -> ProviderError:
    return ProviderError(name, "boom", status_code=500)


class HashEmbedder:
    """Bag-of-words hashing embedder: equal texts get equal vectors"""

    def __init__(self, dims: int = 64, fail: bool = False) -> None:
        self.dims = dims
        self.fail = fail
        self.calls = 0

    async def embed(self, text: str) -> Optional[List[float]]:
        self.calls += 1
        if self.fail:
            return None
        vector = [0.0] * self.dims
        for word in re.findall(r"\w+", text.lower()):
            vector[crc32(word.encode("utf-8")) % self.dims] += 1.0
        return vector


class ScriptedCompletion:
    """Side-completion callable returning canned texts in order"""

    def __init__(self, replies: List[Union[str, Exception]]) -> None:
        self.replies = list(replies)
        self.prompts: List[str] = []
        self.max_tokens: List[int] = []

    async def __call__(self, prompt: str, max_tokens: int) -> str:
        self.prompts.append(prompt)
        self.max_tokens.append(max_tokens)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture(autouse=True)
def fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def word_counter() -> WordCounter:
    return WordCounter()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder()


@pytest.fixture
def memory_settings() -> MemorySettings:
    return MemorySettings()


@pytest.fixture
def memory_store(vector_store, embedder, memory_settings, word_counter) -> ScopedMemoryStore:
    return ScopedMemoryStore(vector_store, embedder, memory_settings, token_counter=word_counter)
