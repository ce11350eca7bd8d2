from typing import List, Optional


class CompanionError(Exception):
    """Base error for the conversation core"""


class ProviderError(CompanionError):
    """A single LLM backend failed"""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class ProviderTimeout(ProviderError):
    """A backend did not answer within its timeout"""

    def __init__(self, provider: str, timeout_seconds: float):
        super().__init__(provider, f"timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class ProviderUnavailable(CompanionError):
    """A backend is unconfigured, disabled, or failed its availability probe"""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider} unavailable: {reason}")
        self.provider = provider
        self.reason = reason


class AllProvidersExhausted(CompanionError):
    """No candidate backend produced a completion"""

    def __init__(
        self,
        last_provider: Optional[str],
        last_error: Optional[BaseException],
        attempted: Optional[List[str]] = None
    ):
        if last_provider:
            message = f"All providers failed. Last error from {last_provider}: {last_error}"
        else:
            message = "All providers failed. No provider was available"
        super().__init__(message)
        self.last_provider = last_provider
        self.last_error = last_error
        self.attempted = attempted or []


class MemoryStoreDegraded(CompanionError):
    """Vector store or embedding failure during retrieval"""


class EmbeddingUnavailable(CompanionError):
    """No embedding could be produced for a memory"""


class BelowImportanceThreshold(CompanionError):
    """Memory importance is under the configured minimum"""

    def __init__(self, importance: float, minimum: float):
        super().__init__(f"Importance {importance:.2f} is below minimum {minimum:.2f}")
        self.importance = importance
        self.minimum = minimum


class MemoryDisabled(CompanionError):
    """Memory subsystem is switched off"""


class CompactionFailure(CompanionError):
    """History summarization failed; history stays uncompacted"""


class ReasoningParseFailure(CompanionError):
    """Reasoning response was not a structured thought"""
