"""
Instance Manager

Bounded, TTL-expiring cache of loaded collection engines keyed by owner.
Reads are lazy: ``acquire`` returns the cached engine or builds and loads a
new one, and concurrent acquires for the same owner share that single load.

Eviction only drops the cached engine. Durable collections are already
written through on every change; a transient (in-memory) collection is lost,
and the next request for it reports an expired session.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from loguru import logger

from .collection import CollectionEngine
from .persistence import memory_location

EngineFactory = Callable[[str, str], CollectionEngine]


@dataclass
class CachedInstance:
    engine: CollectionEngine
    last_access: float


# ---------------------------------------------------------------------------
# Eviction policy
# ---------------------------------------------------------------------------

class EvictionPolicy(Protocol):
    def select_victim(self, instances: Dict[str, CachedInstance], exclude: Optional[str] = None) -> Optional[str]:
        ...


class LeastRecentlyUsed:
    """Linear scan for the oldest ``last_access``; fine for a handful of instances."""

    def select_victim(self, instances: Dict[str, CachedInstance], exclude: Optional[str] = None) -> Optional[str]:
        victim = None
        oldest = float("inf")
        for owner_id, instance in instances.items():
            if owner_id == exclude:
                continue
            if instance.last_access < oldest:
                oldest = instance.last_access
                victim = owner_id
        return victim


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class InstanceManager:
    def __init__(
        self,
        factory: EngineFactory,
        max_instances: int = 10,
        ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
        policy: Optional[EvictionPolicy] = None,
    ) -> None:
        self.factory = factory
        self.max_instances = max_instances
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.policy = policy or LeastRecentlyUsed()
        self._instances: Dict[str, CachedInstance] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._instances)

    def has_instance(self, owner_id: str) -> bool:
        return owner_id in self._instances

    def get(self, owner_id: str) -> Optional[CollectionEngine]:
        """Cached engine for ``owner_id``, refreshing its last-access time."""
        instance = self._instances.get(owner_id)
        if instance is None:
            return None
        instance.last_access = self.clock()
        return instance.engine

    def set(self, owner_id: str, engine: CollectionEngine) -> None:
        self._instances[owner_id] = CachedInstance(engine=engine, last_access=self.clock())
        while len(self._instances) > self.max_instances:
            victim = self.policy.select_victim(self._instances, exclude=owner_id)
            if victim is None:
                break
            self.evict(victim)

    def evict(self, owner_id: str) -> bool:
        instance = self._instances.pop(owner_id, None)
        if instance is None:
            return False
        logger.info(f"Evicted collection for {owner_id} ({instance.engine.mode.value})")
        return True

    def invalidate(self, owner_id: str) -> None:
        """Drop the cached engine so the next acquire reloads from storage."""
        self._instances.pop(owner_id, None)

    def sweep(self) -> List[str]:
        """Evict every instance idle for longer than the TTL; returns their owners."""
        now = self.clock()
        expired = [
            owner_id for owner_id, instance in self._instances.items()
            if now - instance.last_access > self.ttl_seconds
        ]
        for owner_id in expired:
            self.evict(owner_id)
        return expired

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    async def acquire(self, owner_id: str, location: str) -> CollectionEngine:
        """
        Cached engine for ``owner_id`` or a freshly loaded one.

        A load that fails caches nothing. An engine whose document could not
        be fetched is returned uncached so the caller can offer an upload.
        """
        engine = self.get(owner_id)
        if engine is not None:
            return engine

        pending = self._pending.get(owner_id)
        if pending is None:
            pending = asyncio.ensure_future(self._construct(owner_id, location))
            self._pending[owner_id] = pending

            def _clear(task: asyncio.Future, owner_id: str = owner_id) -> None:
                if self._pending.get(owner_id) is task:
                    del self._pending[owner_id]

            pending.add_done_callback(_clear)
        return await asyncio.shield(pending)

    async def _construct(self, owner_id: str, location: str) -> CollectionEngine:
        engine = self.factory(owner_id, location)
        await engine.load()
        if engine.is_loaded:
            self.set(owner_id, engine)
        return engine

    async def set_from_memory(self, owner_id: str, data: bytes) -> CollectionEngine:
        """Build a transient engine from uploaded bytes and cache it."""
        engine = self.factory(owner_id, memory_location(owner_id))
        engine.load_from_bytes(data)
        self.set(owner_id, engine)
        return engine

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            expired = self.sweep()
            if expired:
                logger.info(f"TTL sweep evicted {len(expired)} collections")

    def start_sweeper(self, interval: float) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_forever(interval))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
