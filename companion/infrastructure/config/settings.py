"""
Configuration for the conversation core.

All settings can be overridden through environment variables with the
COMPANION_ prefix. Nested sections use a double underscore:

    COMPANION_LLM__DEFAULT_PROVIDER=Gemini
    COMPANION_MEMORY__MIN_IMPORTANCE=0.4
    COMPANION_LLM__PROVIDERS__OPENAI__API_KEY=sk-...
"""

from typing import Dict, List, Optional, Literal
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseModel):
    """One LLM backend"""
    enabled: bool = True
    api_key: Optional[str] = None
    base_url: str = ""
    default_model: str = ""
    timeout_seconds: Optional[float] = Field(None, description="Overrides the global LLM timeout")
    probe_availability: bool = True
    probe_ttl_seconds: float = 60.0


def _default_providers() -> Dict[str, ProviderSettings]:
    return {
        "OpenAI": ProviderSettings(
            base_url="https://api.openai.com/v1",
            default_model="gpt-4o-mini"
        ),
        "Grok": ProviderSettings(
            base_url="https://api.x.ai/v1",
            default_model="grok-3-mini"
        ),
        "Gemini": ProviderSettings(
            base_url="https://generativelanguage.googleapis.com/v1beta",
            default_model="gemini-2.0-flash"
        ),
    }


class LLMSettings(BaseModel):
    default_provider: str = "OpenAI"
    enable_fallback: bool = True
    fallback_order: List[str] = Field(default_factory=lambda: ["OpenAI", "Grok", "Gemini"])
    global_system_message: str = (
        "You are a friendly, helpful companion in a group chat. "
        "Answer naturally and keep replies concise."
    )
    temperature: float = 0.6
    timeout_seconds: float = 120.0
    max_output_tokens: int = 1200
    providers: Dict[str, ProviderSettings] = Field(default_factory=_default_providers)


class GateSettings(BaseModel):
    duplicate_window_seconds: float = 5.0
    idle_eviction_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0
    shard_count: int = 16


class HistorySettings(BaseModel):
    max_tokens: int = 8000


class SessionSettings(BaseModel):
    inactivity_timeout_minutes: int = 30
    enable_auto_refresh: bool = True
    max_messages_before_compaction: int = 50
    messages_to_keep_after_compaction: int = 10
    extract_memories_on_compaction: bool = True
    extract_memories_on_refresh: bool = True
    create_summary_on_refresh: bool = True
    check_interval_seconds: float = 300.0


def _default_type_weights() -> Dict[str, float]:
    return {
        "fact": 0.9,
        "instruction": 0.85,
        "summary": 0.8,
        "preference": 0.7,
        "context": 0.6,
    }


class MemorySettings(BaseModel):
    enabled: bool = True
    similarity_threshold: float = 0.65
    min_importance: float = 0.3
    scope_boost: float = 0.1
    explicit_importance: float = 0.9
    max_memory_tokens: int = 500
    retention_days: int = 30
    cleanup_max_importance: float = 0.8
    min_messages_for_memory: int = 5
    session_top_k: int = 5
    user_top_k: int = 3
    server_top_k: int = 2
    type_weights: Dict[str, float] = Field(default_factory=_default_type_weights)
    session: SessionSettings = Field(default_factory=SessionSettings)


class ReasoningSettings(BaseModel):
    enabled: bool = True
    max_iterations: int = 4
    confidence_threshold: float = 0.7
    min_message_length: int = 15
    token_limit: int = 350
    enable_self_reflection: bool = True
    use_memories: bool = True
    log_trace: bool = False
    recent_turns: int = 6


class EmbeddingSettings(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    model: str = "text-embedding-3-small"
    timeout_seconds: float = 30.0


class VectorStoreSettings(BaseModel):
    backend: Literal["memory", "qdrant"] = "memory"
    host: str = "localhost"
    port: int = 6334
    api_key: Optional[str] = None
    https: bool = False
    collection: str = "companion_memories"
    vector_size: int = 1536


class WebSearchSettings(BaseModel):
    enabled: bool = True
    engine: Literal["duckduckgo", "google"] = "duckduckgo"
    api_key: Optional[str] = None
    search_engine_id: Optional[str] = None
    timeout_seconds: float = 10.0
    max_results: int = 5


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: Literal["json", "console"] = "json"
    service_name: str = "companion-core"


class TracingSettings(BaseModel):
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    host: str = "https://cloud.langfuse.com"


class CompanionSettings(BaseSettings):
    """Unified configuration for the conversation core"""

    model_config = SettingsConfigDict(
        env_prefix="COMPANION_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    reasoning: ReasoningSettings = Field(default_factory=ReasoningSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    web_search: WebSearchSettings = Field(default_factory=WebSearchSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    tracing: TracingSettings = Field(default_factory=TracingSettings)


@lru_cache()
def get_settings() -> CompanionSettings:
    """Cached settings instance"""
    return CompanionSettings()
