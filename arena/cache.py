"""
Read-through caches for tournament lookups and listings.

Values must be JSON-compatible so the in-process and Redis caches are
interchangeable. The cache is never consulted when deciding a mutation.
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300

TOURNAMENT_KEY_PREFIX = 'tournament:'
TOURNAMENT_LIST_PREFIX = 'tournaments:list:'


def tournament_key(tournament_id: str) -> str:
    return f"{TOURNAMENT_KEY_PREFIX}{tournament_id}"


def tournament_list_key(status: str = None) -> str:
    return f"{TOURNAMENT_LIST_PREFIX}{status or 'all'}"


class Cache(ABC):

    @abstractmethod
    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        """Return the live cached value for key, or load, store and return it."""

    @abstractmethod
    def invalidate(self, key: str, prefix: bool = False) -> int:
        """Drop one key, or every key starting with ``key`` when prefix is set."""

    def close(self):
        pass

    def invalidate_tournament(self, tournament_id: str):
        """Drop a tournament's entry and every list variant."""
        self.invalidate(tournament_key(tournament_id))
        self.invalidate(TOURNAMENT_LIST_PREFIX, prefix=True)


class TTLCache(Cache):
    """Thread-safe in-memory cache with a fixed TTL from insertion."""

    def __init__(self, ttl: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self.stats = {"hits": 0, "misses": 0, "evictions": 0, "invalidations": 0}

    def _live(self, key: str, default: Any) -> Any:
        # Caller holds self._lock
        entry = self._entries.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            self.stats["evictions"] += 1
            return default
        return value

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._live(key, default)

    def set(self, key: str, value: Any):
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl, value)

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        missing = object()
        with self._lock:
            value = self._live(key, missing)
            if value is not missing:
                self.stats["hits"] += 1
                return value
            self.stats["misses"] += 1

        # Loader runs outside the lock; two concurrent misses may both load
        value = loader()
        self.set(key, value)
        return value

    def invalidate(self, key: str, prefix: bool = False) -> int:
        with self._lock:
            if prefix:
                doomed = [k for k in self._entries if k.startswith(key)]
            else:
                doomed = [key] if key in self._entries else []
            for k in doomed:
                del self._entries[k]
            self.stats["invalidations"] += len(doomed)
            return len(doomed)

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
            for k in expired:
                del self._entries[k]
            self.stats["evictions"] += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def start_sweeper(self, interval: float):
        if self._sweeper is not None or interval <= 0:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval,), name='cache-sweeper', daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self):
        if self._sweeper is None:
            return
        self._stop.set()
        self._sweeper.join(timeout=5)
        self._sweeper = None

    def close(self):
        self.stop_sweeper()

    def _sweep_loop(self, interval: float):
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}")


class RedisCache(Cache):
    """Shared cache in Redis. Expiry is delegated to Redis via SETEX."""

    def __init__(self, redis_client: redis.Redis, ttl: int = DEFAULT_TTL_SECONDS, namespace: str = 'arena:cache:'):
        self.redis = redis_client
        self.ttl = int(ttl)
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        try:
            cached = self.redis.get(self._key(key))
        except redis.RedisError as e:
            logger.warning(f"Redis cache read failed for {key}: {e}")
            return loader()

        if cached is not None:
            return json.loads(cached)

        value = loader()
        try:
            self.redis.setex(self._key(key), self.ttl, json.dumps(value))
        except redis.RedisError as e:
            logger.warning(f"Redis cache write failed for {key}: {e}")
        return value

    def invalidate(self, key: str, prefix: bool = False) -> int:
        if not prefix:
            return self.redis.delete(self._key(key))

        removed = 0
        batch = []
        for redis_key in self.redis.scan_iter(match=f"{self._key(key)}*", count=500):
            batch.append(redis_key)
            if len(batch) >= 500:
                removed += self.redis.delete(*batch)
                batch = []
        if batch:
            removed += self.redis.delete(*batch)
        return removed
