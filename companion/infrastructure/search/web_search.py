from typing import Dict, Any, List, Optional
import httpx
import structlog

from companion.domain.ports import WebSearchResult, WebSearchResultItem
from companion.infrastructure.config.settings import WebSearchSettings

logger = structlog.get_logger(__name__)

DUCKDUCKGO_URL = "https://api.duckduckgo.com/"
GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"


class DuckDuckGoSearch:
    """DuckDuckGo instant-answer API. No key needed."""

    def __init__(self, timeout_seconds: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    def _topics(self, topics: List[Dict[str, Any]]) -> List[WebSearchResultItem]:
        items = []
        for topic in topics:
            if "Topics" in topic:
                items.extend(self._topics(topic["Topics"]))
                continue
            text = topic.get("Text")
            if not text:
                continue
            title, _, snippet = text.partition(" - ")
            items.append(WebSearchResultItem(title=title, snippet=snippet or text, url=topic.get("FirstURL", "")))
        return items

    async def search(self, query: str, max_results: int = 5) -> WebSearchResult:
        try:
            response = await self._client.get(
                DUCKDUCKGO_URL,
                params={"q": query, "format": "json", "no_html": 1, "skip_disambig": 1}
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("DuckDuckGo search failed", query=query, error=str(e))
            return WebSearchResult(query=query, success=False, error=str(e))

        items = []
        if data.get("AbstractText"):
            items.append(WebSearchResultItem(
                title=data.get("Heading") or query,
                snippet=data["AbstractText"],
                url=data.get("AbstractURL", "")
            ))
        if data.get("Answer"):
            items.append(WebSearchResultItem(title="Instant answer", snippet=str(data["Answer"])))
        items.extend(self._topics(data.get("RelatedTopics") or []))

        return WebSearchResult(query=query, items=items[:max_results])


class GoogleSearch:
    """Google Programmable Search (Custom Search JSON API)"""

    def __init__(
        self,
        api_key: str,
        search_engine_id: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.search_engine_id = search_engine_id
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def search(self, query: str, max_results: int = 5) -> WebSearchResult:
        try:
            response = await self._client.get(
                GOOGLE_CSE_URL,
                params={
                    "key": self.api_key,
                    "cx": self.search_engine_id,
                    "q": query,
                    "num": max(1, min(10, max_results)),
                }
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Google search failed", query=query, error=str(e))
            return WebSearchResult(query=query, success=False, error=str(e))

        items = [
            WebSearchResultItem(title=item.get("title", ""), snippet=item.get("snippet", ""), url=item.get("link", ""))
            for item in data.get("items") or []
        ]
        return WebSearchResult(query=query, items=items[:max_results])


def build_web_search(settings: WebSearchSettings, client: Optional[httpx.AsyncClient] = None):
    """Configured search engine, or None when search is off or misconfigured"""

    if not settings.enabled:
        return None
    if settings.engine == "google":
        if not settings.api_key or not settings.search_engine_id:
            logger.warning("Google search selected without api_key/search_engine_id, web search disabled")
            return None
        return GoogleSearch(settings.api_key, settings.search_engine_id, settings.timeout_seconds, client)
    return DuckDuckGoSearch(settings.timeout_seconds, client)
