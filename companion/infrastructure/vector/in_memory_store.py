from typing import Dict, Any, List, Tuple
import asyncio
import math

from companion.domain.models.memory import MemoryFilter


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorStore:
    """Process-local vector store with cosine similarity search"""

    def __init__(self):
        self.points: Dict[str, Tuple[List[float], Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, point_id: str, vector: List[float], payload: Dict[str, Any]) -> None:
        async with self._lock:
            self.points[point_id] = (list(vector), dict(payload))

    async def query_similar(
        self,
        vector: List[float],
        memory_filter: MemoryFilter,
        top_k: int,
        min_score: float
    ) -> List[Tuple[Dict[str, Any], float]]:
        """Top-k payloads at or above min_score, best first"""

        async with self._lock:
            scored = []
            for stored_vector, payload in self.points.values():
                if not memory_filter.matches(payload):
                    continue
                score = cosine_similarity(vector, stored_vector)
                if score >= min_score:
                    scored.append((dict(payload), score))

        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:top_k]

    async def scroll(self, memory_filter: MemoryFilter, limit: int = 1000) -> List[Dict[str, Any]]:
        async with self._lock:
            matches = [dict(payload) for _, payload in self.points.values() if memory_filter.matches(payload)]
        return matches[:limit]

    async def delete(self, point_ids: List[str]) -> int:
        async with self._lock:
            deleted = 0
            for point_id in point_ids:
                if self.points.pop(point_id, None) is not None:
                    deleted += 1
            return deleted

    def __len__(self) -> int:
        return len(self.points)
