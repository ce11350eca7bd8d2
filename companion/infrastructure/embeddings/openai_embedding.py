from typing import List, Optional
import httpx
import structlog

from companion.infrastructure.config.settings import EmbeddingSettings

logger = structlog.get_logger(__name__)


class OpenAIEmbeddingProvider:
    """Embeddings from an OpenAI-compatible /embeddings endpoint"""

    def __init__(self, settings: EmbeddingSettings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = settings.base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)

    async def embed(self, text: str) -> Optional[List[float]]:
        """Vector for text, or None when the service cannot produce one"""

        if not self.settings.api_key or not text.strip():
            return None

        try:
            response = await self._client.post(
                f"{self.base_url}/embeddings",
                json={"model": self.settings.model, "input": text},
                headers={"Authorization": f"Bearer {self.settings.api_key}"},
                timeout=self.settings.timeout_seconds
            )
            response.raise_for_status()
            data = response.json()
            return [float(x) for x in data["data"][0]["embedding"]]
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("Embedding request failed", model=self.settings.model, error=str(e))
            return None
