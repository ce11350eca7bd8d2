from typing import Dict, Any, List, Optional, Tuple
import asyncio
import structlog
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance, FieldCondition, Filter, MatchValue, PointIdsList, PointStruct, Range, VectorParams
)

from companion.domain.models.memory import MemoryFilter

logger = structlog.get_logger(__name__)


def build_filter(memory_filter: MemoryFilter) -> Optional[Filter]:
    """Translate a memory filter into a Qdrant payload filter"""

    must: List[FieldCondition] = []
    must_not: List[FieldCondition] = []

    for key in ("session_id", "user_id", "server_id"):
        value = getattr(memory_filter, key)
        if value is not None:
            must.append(FieldCondition(key=key, match=MatchValue(value=value)))
    if memory_filter.scope is not None:
        must.append(FieldCondition(key="scope", match=MatchValue(value=memory_filter.scope.value)))
    if memory_filter.created_before is not None:
        must.append(FieldCondition(key="created_ts", range=Range(lt=memory_filter.created_before.timestamp())))
    if memory_filter.max_importance is not None:
        must.append(FieldCondition(key="importance", range=Range(lte=memory_filter.max_importance)))
    if memory_filter.exclude_session_id is not None:
        must_not.append(FieldCondition(key="session_id", match=MatchValue(value=memory_filter.exclude_session_id)))

    if not must and not must_not:
        return None
    return Filter(must=must or None, must_not=must_not or None)


class QdrantVectorStore:
    """Vector memory backed by a Qdrant collection"""

    def __init__(
        self,
        collection: str,
        vector_size: int,
        host: str = "localhost",
        port: int = 6334,
        api_key: Optional[str] = None,
        https: bool = False,
        client: Optional[AsyncQdrantClient] = None
    ):
        self.collection = collection
        self.vector_size = vector_size
        self.client = client or AsyncQdrantClient(
            host=host,
            grpc_port=port,
            prefer_grpc=True,
            api_key=api_key,
            https=https
        )
        self._ready = False
        self._ready_lock = asyncio.Lock()

    async def ensure_collection(self):
        if self._ready:
            return
        async with self._ready_lock:
            if self._ready:
                return
            if not await self.client.collection_exists(self.collection):
                await self.client.create_collection(
                    collection_name=self.collection,
                    vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE)
                )
                logger.info("Created Qdrant collection", collection=self.collection, vector_size=self.vector_size)
            self._ready = True

    async def upsert(self, point_id: str, vector: List[float], payload: Dict[str, Any]) -> None:
        await self.ensure_collection()
        await self.client.upsert(
            collection_name=self.collection,
            points=[PointStruct(id=point_id, vector=vector, payload=payload)]
        )

    async def query_similar(
        self,
        vector: List[float],
        memory_filter: MemoryFilter,
        top_k: int,
        min_score: float
    ) -> List[Tuple[Dict[str, Any], float]]:
        await self.ensure_collection()
        response = await self.client.query_points(
            collection_name=self.collection,
            query=vector,
            query_filter=build_filter(memory_filter),
            limit=top_k,
            score_threshold=min_score,
            with_payload=True
        )
        return [(point.payload or {}, point.score) for point in response.points]

    async def scroll(self, memory_filter: MemoryFilter, limit: int = 1000) -> List[Dict[str, Any]]:
        await self.ensure_collection()
        payloads: List[Dict[str, Any]] = []
        offset = None
        while len(payloads) < limit:
            points, offset = await self.client.scroll(
                collection_name=self.collection,
                scroll_filter=build_filter(memory_filter),
                limit=min(256, limit - len(payloads)),
                offset=offset,
                with_payload=True,
                with_vectors=False
            )
            payloads.extend(point.payload or {} for point in points)
            if offset is None:
                break
        return payloads

    async def delete(self, point_ids: List[str]) -> int:
        if not point_ids:
            return 0
        await self.ensure_collection()
        await self.client.delete(
            collection_name=self.collection,
            points_selector=PointIdsList(points=list(point_ids))
        )
        return len(point_ids)

    async def close(self):
        await self.client.close()
