"""
taskdash Result Cache — fingerprinted aggregate results with TTL + LRU eviction.

Two backends share one contract (get / set / invalidate / get_or_compute):

  ResultCache       in-process OrderedDict, owned by an AnalyticsService
  RedisResultCache  Redis DB 3, for several dashboard workers sharing results

Keys are derived from a Fingerprint of the inputs, never from the viewer:
the visible task set already decides the result, and any insert, delete or
edit among those tasks changes the key. A miss is never an error, it is the
normal trigger for recomputation. Expired entries are never returned.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from taskdash.analytics.models import AggregateResult, Task
from taskdash.analytics.normalize import normalize_task
from taskdash.engine.logging import log, log_cache_event

logger = logging.getLogger("taskdash.engine.cache")

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Fingerprint:
    """
    Deterministic summary of one computation's inputs.

    ``content`` is a digest of every visible task's normalized fields, so a
    changed ``hoursSpent`` (or any other field) yields a new key even when
    the task ids and timestamps are unchanged.
    """

    computation: str
    task_count: int
    month_id: Optional[str]
    user_id: Optional[str]
    reporter_id: Optional[str]
    content: str
    last_modified: int

    @property
    def key(self) -> str:
        """``<computation>:<month>:<sha256>``, greppable by type and month."""
        canonical = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"{self.computation}:{self.month_id or '-'}:{digest}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fingerprint":
        return cls(**data)


def _task_signature(task: Task) -> str:
    return json.dumps(
        task.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )


def build_fingerprint(
    computation: str,
    tasks: Iterable[Any],
    *,
    month_id: Optional[str] = None,
    user_id: Optional[str] = None,
    reporter_id: Optional[str] = None,
) -> Fingerprint:
    """
    Fingerprint *tasks* for *computation* under the given scope.

    Task signatures are sorted, so input order does not affect the key.
    """
    canonical: List[Task] = []
    for raw in tasks or ():
        task = raw if isinstance(raw, Task) else normalize_task(raw)
        if task is not None:
            canonical.append(task)

    hasher = hashlib.sha256()
    for signature in sorted(_task_signature(task) for task in canonical):
        hasher.update(signature.encode("utf-8"))
        hasher.update(b"\n")

    return Fingerprint(
        computation=computation,
        task_count=len(canonical),
        month_id=month_id,
        user_id=user_id,
        reporter_id=reporter_id,
        content=hasher.hexdigest(),
        last_modified=max((task.last_modified for task in canonical), default=0),
    )


# ---------------------------------------------------------------------------
# In-memory cache
# ---------------------------------------------------------------------------

@dataclass
class CacheEntry:
    key: str
    data: AggregateResult
    computed_at: int
    fingerprint: Fingerprint

    def is_valid(self, now: int, ttl_ms: int) -> bool:
        return now - self.computed_at < ttl_ms


class ResultCache:
    """
    In-process result cache.

    Entries expire ``ttl_ms`` after they were stored; when more than
    ``max_entries`` are held the least recently used one is evicted. Both
    triggers are independent. All access is guarded by one lock, and
    ``get_or_compute`` serializes concurrent computations of the same key.
    """

    def __init__(
        self,
        ttl_ms: int = 2 * 60 * 1000,
        max_entries: int = 30,
        clock: Optional[Clock] = None,
    ):
        if ttl_ms <= 0:
            raise ValueError(f"ttl_ms must be positive, got {ttl_ms}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be at least 1, got {max_entries}")
        self._ttl_ms = ttl_ms
        self._max_entries = max_entries
        self._clock = clock or _now_ms
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._computing: Dict[str, threading.Lock] = {}
        self._hits = 0
        self._misses = 0

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _lookup(self, key: str) -> Optional[AggregateResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_valid(self._clock(), self._ttl_ms):
            del self._entries[key]
            logger.debug(f"Cache entry expired: {key}")
            return None
        self._entries.move_to_end(key)
        return entry.data

    def get(self, fingerprint: Fingerprint) -> Optional[AggregateResult]:
        """The cached result, or None on miss or expiry."""
        key = fingerprint.key
        with self._lock:
            result = self._lookup(key)
            if result is None:
                self._misses += 1
                logger.debug(f"Cache miss: {key}")
            else:
                self._hits += 1
                logger.debug(f"Cache hit: {key}")
            return result

    def set(self, fingerprint: Fingerprint, result: AggregateResult) -> CacheEntry:
        """Store *result*, stamping it with the current time."""
        key = fingerprint.key
        entry = CacheEntry(
            key=key, data=result, computed_at=self._clock(), fingerprint=fingerprint
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Cache full, evicted {evicted}")
                log(log_cache_event("evicted", fingerprint=evicted, reason="max_entries"))
        return entry

    def invalidate(self, predicate: Callable[[Fingerprint], bool]) -> int:
        """Drop every entry whose fingerprint satisfies *predicate*."""
        with self._lock:
            doomed = [
                key for key, entry in self._entries.items()
                if predicate(entry.fingerprint)
            ]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries")
            log(log_cache_event("invalidated", reason="predicate", count=len(doomed)))
        return len(doomed)

    def invalidate_all(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log(log_cache_event("invalidated", reason="all", count=count))
        return count

    def invalidate_type(self, computation: str) -> int:
        return self.invalidate(lambda fp: fp.computation == computation)

    def invalidate_month(self, month_id: str) -> int:
        return self.invalidate(lambda fp: fp.month_id == month_id)

    def get_or_compute(
        self,
        fingerprint: Fingerprint,
        compute: Callable[[], AggregateResult],
    ) -> AggregateResult:
        """
        Atomic compute-if-absent.

        Concurrent callers with the same fingerprint wait for the first one
        instead of recomputing; callers with other fingerprints are not blocked.
        """
        cached = self.get(fingerprint)
        if cached is not None:
            return cached

        key = fingerprint.key
        with self._lock:
            key_lock = self._computing.setdefault(key, threading.Lock())
        try:
            with key_lock:
                with self._lock:
                    cached = self._lookup(key)
                if cached is None:
                    cached = compute()
                    self.set(fingerprint, cached)
                return cached
        finally:
            with self._lock:
                if self._computing.get(key) is key_lock:
                    del self._computing[key]

    def cleanup(self) -> int:
        """Evict expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key for key, entry in self._entries.items()
                if not entry.is_valid(now, self._ttl_ms)
            ]
            for key in expired:
                del self._entries[key]
        if expired:
            log(log_cache_event("expired", reason="cleanup", count=len(expired)))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            total = len(self._entries)
            valid = sum(
                1 for entry in self._entries.values()
                if entry.is_valid(now, self._ttl_ms)
            )
            lookups = self._hits + self._misses
            return {
                "backend": "memory",
                "total_entries": total,
                "valid_entries": valid,
                "expired_entries": total - valid,
                "max_entries": self._max_entries,
                "ttl_ms": self._ttl_ms,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            }


# ---------------------------------------------------------------------------
# Redis cache
# ---------------------------------------------------------------------------

class RedisResultCache:
    """
    Result cache in Redis with a circuit breaker.

    Payloads are JSON ``{"fingerprint", "computedAt", "data"}`` stored with a
    millisecond expiry. An index sorted set (score = computedAt) bounds the
    number of entries: the oldest are dropped past ``max_entries``. Any Redis
    failure or unreadable payload is a miss; results stay reconstructible
    from the task collection.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "taskdash:agg:",
        ttl_ms: int = 2 * 60 * 1000,
        max_entries: int = 30,
        db: int = 3,
        clock: Optional[Clock] = None,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._ttl_ms = ttl_ms
        self._max_entries = max_entries
        self._db = db
        self._clock = clock or _now_ms
        self._client = None
        self._available = False
        self._hits = 0
        self._misses = 0

        # Circuit breaker state
        self._failure_count = 0
        self._failure_threshold = 5
        self._failure_window = 30  # seconds
        self._first_failure_time = 0.0
        self._circuit_open = False

    def connect(self) -> bool:
        """Initialize the Redis connection. False (and miss-only mode) on failure."""
        try:
            import redis
            self._client = redis.Redis.from_url(
                self._redis_url,
                db=self._db,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            self._client.ping()
            self._available = True
            self._circuit_open = False
            self._failure_count = 0
            logger.info(f"Redis result cache connected: DB {self._db} ({self._prefix})")
            return True
        except Exception as e:
            logger.warning(f"Redis connection failed (DB {self._db}): {e}")
            self._available = False
            return False

    def _check_circuit(self) -> bool:
        if self._circuit_open:
            if time.time() - self._first_failure_time > self._failure_window:
                self._circuit_open = False
                self._failure_count = 0
                return self.connect()
            return False
        return self._available

    def _record_failure(self, operation: str, error: Exception) -> None:
        logger.debug(f"Redis {operation} failed: {error}")
        now = time.time()
        if self._failure_count == 0:
            self._first_failure_time = now
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            elapsed = now - self._first_failure_time
            if elapsed <= self._failure_window:
                self._circuit_open = True
                logger.error(
                    f"Redis circuit breaker OPEN: {self._failure_count} failures in {elapsed:.1f}s"
                )

    def _make_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}__index__"

    def _load(self, full_key: str) -> Optional[Dict[str, Any]]:
        raw = self._client.get(full_key)
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            return {
                "fingerprint": Fingerprint.from_dict(payload["fingerprint"]),
                "computed_at": int(payload["computedAt"]),
                "data": AggregateResult.from_dict(payload["data"]),
            }
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"Discarding unreadable cache payload {full_key}: {e}")
            self._client.delete(full_key)
            return None

    def get(self, fingerprint: Fingerprint) -> Optional[AggregateResult]:
        if not self._check_circuit():
            self._misses += 1
            return None
        try:
            payload = self._load(self._make_key(fingerprint.key))
        except Exception as e:
            self._record_failure("GET", e)
            payload = None
        if payload is None or self._clock() - payload["computed_at"] >= self._ttl_ms:
            self._misses += 1
            return None
        self._hits += 1
        return payload["data"]

    def set(self, fingerprint: Fingerprint, result: AggregateResult) -> bool:
        if not self._check_circuit():
            return False
        computed_at = self._clock()
        full_key = self._make_key(fingerprint.key)
        body = json.dumps({
            "fingerprint": fingerprint.to_dict(),
            "computedAt": computed_at,
            "data": result.to_dict(),
        })
        try:
            self._client.set(full_key, body, px=self._ttl_ms)
            self._client.zadd(self._index_key, {full_key: computed_at})
            overflow = self._client.zcard(self._index_key) - self._max_entries
            if overflow > 0:
                evicted = [member for member, _ in self._client.zpopmin(self._index_key, overflow)]
                if evicted:
                    self._client.delete(*evicted)
                    log(log_cache_event("evicted", reason="max_entries", count=len(evicted)))
            return True
        except Exception as e:
            self._record_failure("SET", e)
            return False

    def _scan_keys(self) -> List[str]:
        return [
            key for key in self._client.scan_iter(match=f"{self._prefix}*", count=1000)
            if key != self._index_key
        ]

    def invalidate(self, predicate: Callable[[Fingerprint], bool]) -> int:
        if not self._check_circuit():
            return 0
        try:
            doomed = []
            for full_key in self._scan_keys():
                payload = self._load(full_key)
                if payload is not None and predicate(payload["fingerprint"]):
                    doomed.append(full_key)
            if doomed:
                self._client.delete(*doomed)
                self._client.zrem(self._index_key, *doomed)
                log(log_cache_event("invalidated", reason="predicate", count=len(doomed)))
            return len(doomed)
        except Exception as e:
            self._record_failure("INVALIDATE", e)
            return 0

    def invalidate_all(self) -> int:
        if not self._check_circuit():
            return 0
        try:
            keys = self._scan_keys()
            self._client.delete(self._index_key, *keys)
            log(log_cache_event("invalidated", reason="all", count=len(keys)))
            return len(keys)
        except Exception as e:
            self._record_failure("INVALIDATE", e)
            return 0

    def invalidate_type(self, computation: str) -> int:
        return self.invalidate(lambda fp: fp.computation == computation)

    def invalidate_month(self, month_id: str) -> int:
        return self.invalidate(lambda fp: fp.month_id == month_id)

    def get_or_compute(
        self,
        fingerprint: Fingerprint,
        compute: Callable[[], AggregateResult],
    ) -> AggregateResult:
        # Workers may recompute the same key concurrently; recomputation is idempotent
        cached = self.get(fingerprint)
        if cached is None:
            cached = compute()
            self.set(fingerprint, cached)
        return cached

    def cleanup(self) -> int:
        """Drop index members whose keys Redis has already expired."""
        if not self._check_circuit():
            return 0
        try:
            return int(self._client.zremrangebyscore(
                self._index_key, "-inf", self._clock() - self._ttl_ms
            ))
        except Exception as e:
            self._record_failure("CLEANUP", e)
            return 0

    def stats(self) -> Dict[str, Any]:
        total = 0
        if self._check_circuit():
            try:
                total = int(self._client.zcard(self._index_key))
            except Exception as e:
                self._record_failure("ZCARD", e)
        lookups = self._hits + self._misses
        return {
            "backend": "redis",
            "available": self.is_available,
            "total_entries": total,
            "max_entries": self._max_entries,
            "ttl_ms": self._ttl_ms,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
        }

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                logger.debug(f"Redis close failed: {e}")
            self._client = None
        self._available = False
        self._circuit_open = False
        self._failure_count = 0

    @property
    def is_available(self) -> bool:
        return self._available and not self._circuit_open

    @property
    def is_circuit_open(self) -> bool:
        return self._circuit_open


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_result_cache(config: Any = None, clock: Optional[Clock] = None):
    """
    Build the cache backend named by ``config.cache.backend``.

    A Redis backend that cannot connect still works in miss-only mode, so
    the engine keeps computing while Redis is down.
    """
    if config is None:
        from taskdash.engine.config import get_config
        config = get_config()

    cache_cfg = config.cache
    if cache_cfg.backend == "redis":
        cache = RedisResultCache(
            redis_url=cache_cfg.redis_url,
            prefix=cache_cfg.key_prefix,
            ttl_ms=cache_cfg.ttl_ms,
            max_entries=cache_cfg.max_entries,
            db=cache_cfg.redis_db,
            clock=clock,
        )
        cache.connect()
        return cache

    return ResultCache(
        ttl_ms=cache_cfg.ttl_ms,
        max_entries=cache_cfg.max_entries,
        clock=clock,
    )
