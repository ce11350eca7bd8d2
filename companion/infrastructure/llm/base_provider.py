from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Tuple, Callable
import time
import httpx
import structlog

from companion.domain.errors import ProviderError, ProviderTimeout
from companion.domain.models.conversation import (
    ConversationMessage, CompletionOptions, CompletionResult
)
from companion.infrastructure.config.settings import ProviderSettings

logger = structlog.get_logger(__name__)


class HttpChatProvider(ABC):
    """Shared plumbing for LLM backends reached over HTTP"""

    def __init__(
        self,
        name: str,
        settings: ProviderSettings,
        default_timeout: float = 120.0,
        default_temperature: float = 0.6,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.enabled = settings.enabled
        self.api_key = settings.api_key
        self.base_url = settings.base_url.rstrip("/")
        self.default_model = settings.default_model
        self.timeout_seconds = settings.timeout_seconds or default_timeout
        self.default_temperature = default_temperature
        self.probe_availability = settings.probe_availability
        self.probe_ttl_seconds = settings.probe_ttl_seconds
        self._client = client or httpx.AsyncClient(timeout=self.timeout_seconds)
        self._clock = clock
        self._probe_cache: Optional[Tuple[float, bool]] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url and self.default_model)

    def headers(self, options: Optional[CompletionOptions] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def probe_path(self) -> str:
        return "/models"

    async def is_available(self) -> bool:
        """Cheap reachability probe, cached for probe_ttl_seconds"""

        if not self.probe_availability:
            return True

        now = self._clock()
        if self._probe_cache is not None and now - self._probe_cache[0] < self.probe_ttl_seconds:
            return self._probe_cache[1]

        try:
            response = await self._client.get(
                f"{self.base_url}{self.probe_path()}",
                headers=self.headers(),
                timeout=min(10.0, self.timeout_seconds)
            )
            available = response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning("Provider probe failed", provider=self.name, error=str(e))
            available = False

        self._probe_cache = (now, available)
        return available

    async def _post(self, path: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout_seconds
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(self.name, self.timeout_seconds) from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"request failed: {e}") from e

        if response.status_code >= 400:
            # A failing backend should be re-probed before the next request
            self._probe_cache = None
            raise ProviderError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.name, "response is not JSON") from e

    def model_for(self, options: CompletionOptions) -> str:
        return options.model or self.default_model

    def temperature_for(self, options: CompletionOptions) -> float:
        return options.temperature if options.temperature is not None else self.default_temperature

    @abstractmethod
    async def complete(
        self, messages: List[ConversationMessage], options: CompletionOptions
    ) -> CompletionResult:
        pass
