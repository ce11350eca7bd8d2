"""Per-conversation admission control.

One exclusive lock per conversation id, created lazily and kept in a sharded
registry. Acquisition never waits: an overlapping message is either a
duplicate (a request is pending inside the duplicate window) or busy, and in
both cases it is dropped rather than queued. Released entries are evicted by
a recurring sweep once they have been idle long enough.
"""
from typing import Dict, List, Optional, Callable, AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from zlib import crc32
import asyncio
import time
import structlog

from companion.infrastructure.observability.logging import conversation_logger, metrics

logger = structlog.get_logger(__name__)


class GateStatus(str, Enum):
    ADMITTED = "admitted"
    BUSY = "busy"
    DUPLICATE = "duplicate"


class _GateEntry:
    __slots__ = ("lock", "pending_since", "last_released_at")

    def __init__(self, now: float):
        self.lock = asyncio.Lock()
        self.pending_since: Optional[float] = None
        self.last_released_at = now


class GateHandle:
    """Proof of admission. Releasing twice is a no-op."""

    def __init__(self, gate: "ConversationGate", conversation_id: str, entry: _GateEntry):
        self._gate = gate
        self._entry = entry
        self.conversation_id = conversation_id
        self.released = False

    def release(self) -> bool:
        if self.released:
            return False
        self.released = True
        self._gate._release(self._entry)
        return True


class GateResult:
    def __init__(self, status: GateStatus, handle: Optional[GateHandle] = None):
        self.status = status
        self.handle = handle

    @property
    def admitted(self) -> bool:
        return self.status == GateStatus.ADMITTED


class ConversationGate:
    """Sharded registry of conversation locks with duplicate suppression"""

    def __init__(
        self,
        duplicate_window_seconds: float = 5.0,
        idle_eviction_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
        shard_count: int = 16,
        clock: Callable[[], float] = time.monotonic
    ):
        self.duplicate_window_seconds = duplicate_window_seconds
        self.idle_eviction_seconds = idle_eviction_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._shards: List[Dict[str, _GateEntry]] = [{} for _ in range(max(1, shard_count))]
        self._sweep_task: Optional[asyncio.Task] = None

    def _shard(self, conversation_id: str) -> Dict[str, _GateEntry]:
        return self._shards[crc32(conversation_id.encode("utf-8")) % len(self._shards)]

    async def try_enter(self, conversation_id: str) -> GateResult:
        """Admit the caller or report why it was dropped. Never waits."""

        now = self._clock()
        shard = self._shard(conversation_id)
        entry = shard.get(conversation_id)
        if entry is None:
            entry = _GateEntry(now)
            shard[conversation_id] = entry

        if entry.lock.locked():
            if entry.pending_since is not None and now - entry.pending_since < self.duplicate_window_seconds:
                status = GateStatus.DUPLICATE
            else:
                status = GateStatus.BUSY
            metrics.increment_counter("gate.dropped", tags={"reason": status.value})
            conversation_logger.log_gate_decision(conversation_id, status.value)
            return GateResult(status)

        # An unlocked lock with no waiters is acquired without suspending
        await entry.lock.acquire()
        entry.pending_since = now
        metrics.increment_counter("gate.admitted")
        return GateResult(GateStatus.ADMITTED, GateHandle(self, conversation_id, entry))

    def _release(self, entry: _GateEntry):
        entry.pending_since = None
        entry.last_released_at = self._clock()
        if entry.lock.locked():
            entry.lock.release()

    @asynccontextmanager
    async def admit(self, conversation_id: str) -> AsyncIterator[GateResult]:
        """Scope the admission: the handle is released on every exit path"""

        result = await self.try_enter(conversation_id)
        try:
            yield result
        finally:
            if result.handle is not None:
                result.handle.release()

    def is_held(self, conversation_id: str) -> bool:
        entry = self._shard(conversation_id).get(conversation_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)

    def sweep(self) -> int:
        """Evict entries that are released and idle past the eviction window"""

        now = self._clock()
        evicted = 0
        for shard in self._shards:
            stale = [
                conversation_id for conversation_id, entry in shard.items()
                if not entry.lock.locked()
                and entry.pending_since is None
                and now - entry.last_released_at >= self.idle_eviction_seconds
            ]
            for conversation_id in stale:
                del shard[conversation_id]
            evicted += len(stale)

        if evicted:
            logger.info("Swept idle conversation locks", evicted=evicted, remaining=len(self))
        metrics.set_gauge("gate.registry_size", len(self))
        return evicted

    async def _sweep_loop(self):
        while True:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                conversation_logger.log_background_failure("gate_sweep", e)

    def start(self):
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
