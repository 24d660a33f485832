"""
StateStore - key-value storage with TTL and atomic compare-and-set.

Every piece of run state (run context, dispatched flags, responses, errors,
the completion latch) lives in a StateStore under a run-scoped key and
expires after the run's lifetime. The engine never deletes state.

Correctness of at-most-once dispatch and exactly-once ChainDone depends on
compare_and_set() being atomic. It must never be implemented as a separate
read followed by a write.

Storage backends:
- In-memory (tests, single-process runs)
- Redis (multi-process workers)
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TYPE_CHECKING

from redis import Redis

if TYPE_CHECKING:
    from jobchain.config import JobChainConfig

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """
    Abstract base class for run state storage.

    Values are arbitrary JSON-compatible data. A stored None is a value;
    has() distinguishes it from an absent key.
    """

    @abstractmethod
    def get(self, key: str) -> Any:
        """
        Get a value.

        Args:
            key: The state key

        Returns:
            The stored value, or None if absent or expired
        """
        pass

    @abstractmethod
    def put(self, key: str, value: Any, ttl: int) -> None:
        """
        Store a value, replacing any existing one.

        Args:
            key: The state key
            value: The value to store
            ttl: Time to live in seconds
        """
        pass

    @abstractmethod
    def has(self, key: str) -> bool:
        """
        Check whether a key holds a (non-expired) value.

        Args:
            key: The state key

        Returns:
            True if a value is stored
        """
        pass

    @abstractmethod
    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        """
        Atomically replace the value at key if it equals expected.

        Args:
            key: The state key
            expected: Expected current value; None means "key is absent"
            new: Value to store on success
            ttl: Time to live in seconds for the new value

        Returns:
            True if this caller won and the value was written
        """
        pass


class InMemoryStateStore(StateStore):
    """
    In-memory implementation of StateStore.

    Thread-safe: a single lock serialises all operations, which makes
    compare_and_set atomic across threads of one process. All data is lost
    when the instance is garbage collected.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            clock: Monotonic time source in seconds (injectable for tests)
        """
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._data: dict[str, tuple[Any, float]] = {}  # key -> (value, expires_at)

    def _live(self, key: str) -> bool:
        """Check presence, evicting the entry if it expired. Caller holds the lock."""
        entry = self._data.get(key)
        if entry is None:
            return False
        if entry[1] <= self._clock():
            del self._data[key]
            return False
        return True

    def get(self, key: str) -> Any:
        with self._lock:
            if not self._live(key):
                return None
            return self._data[key][0]

    def put(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._live(key)

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        with self._lock:
            present = self._live(key)
            if expected is None:
                if present:
                    return False
            elif not present or self._data[key][0] != expected:
                return False
            self._data[key] = (new, self._clock() + ttl)
            return True

    def keys(self, prefix: str = "") -> list[str]:
        """List live keys starting with prefix (for inspection and tests)."""
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._data.clear()


# Compare-and-set executed server side so the read and the write are atomic.
_CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
    return 1
end
return 0
"""


def _encode(value: Any) -> str:
    """JSON-encode a value; raises TypeError for values JSON cannot represent."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _decode(raw: Optional[str]) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


class RedisStateStore(StateStore):
    """
    Redis-backed StateStore for runs shared between processes.

    Values are stored JSON-encoded. compare_and_set from "absent" uses
    SET NX EX; compare_and_set against a concrete value uses a Lua script.
    """

    def __init__(
        self,
        redis_client: Optional[Redis] = None,
        *,
        redis_url: Optional[str] = None,
    ) -> None:
        if redis_client is None and redis_url is None:
            raise ValueError("RedisStateStore requires redis_client or redis_url")
        self._redis: Optional[Redis] = redis_client
        self._redis_url = redis_url
        self._cas = None

    def _client(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def _cas_script(self):
        if self._cas is None:
            self._cas = self._client().register_script(_CAS_SCRIPT)
        return self._cas

    def get(self, key: str) -> Any:
        return _decode(self._client().get(key))

    def put(self, key: str, value: Any, ttl: int) -> None:
        self._client().set(key, _encode(value), ex=ttl)

    def has(self, key: str) -> bool:
        return bool(self._client().exists(key))

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        if expected is None:
            return bool(self._client().set(key, _encode(new), nx=True, ex=ttl))
        result = self._cas_script()(keys=[key], args=[_encode(expected), _encode(new), ttl])
        return bool(result)


def create_state_store(config: "JobChainConfig") -> StateStore:
    """
    Build the state store selected by configuration.

    Args:
        config: Loaded configuration (store = "memory" | "redis")

    Returns:
        A StateStore instance

    Raises:
        ValueError: If the backend is unknown or redis has no URL
    """
    backend = (config.store or "memory").lower()
    if backend == "memory":
        return InMemoryStateStore()
    if backend == "redis":
        if not config.redis_url:
            raise ValueError("store 'redis' requires redis_url")
        logger.debug(f"Using redis state store at {config.redis_url}")
        return RedisStateStore(redis_url=config.redis_url)
    raise ValueError(f"Unknown state store backend: {config.store}")
