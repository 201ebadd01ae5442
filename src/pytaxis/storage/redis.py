"""Redis-based state store implementation.

Provides a Redis backend for multi-machine deployments: every Scheduler,
Executor and Worker instance shares the same Redis.

Data Structures:
- pytaxis:execution:{id} (HASH): version, state, namespace, flow_id, data
- pytaxis:executions (ZSET): every execution id (score = created_at)
- pytaxis:executions:{namespace}:{flow_id} (ZSET): per-flow index
- pytaxis:flow:{namespace}:{flow_id} (HASH): revision -> pickled Flow
- pytaxis:flows (SET): "{namespace}:{flow_id}" of every known flow
- pytaxis:watermark:{trigger_key} (STRING): pickled watermark
- pytaxis:dedup:{dedup_key} (STRING, PX): execution id of the claim
- pytaxis:lease:{name} (STRING, PX): lease owner
- pytaxis:members:{group} (ZSET): member -> expiry (ms)

Key Features:
- Optimistic concurrency for Executions via a compare-and-set Lua script
- Leases and dedup claims use SET NX PX, expiry handled by Redis itself

Design: Adapter Pattern
Implements the StateStore interface for Redis.
"""

from __future__ import annotations

import pickle
import time
from typing import Any

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError("redis-py is required for RedisStateStore. Install with: pip install redis")

from pytaxis.errors import StaleWriteError
from pytaxis.models import Execution, ExecutionState, Flow
from pytaxis.storage.base import StateStore, StorageError, check_flow_revision

PREFIX = "pytaxis"

# KEYS[1] execution hash, KEYS[2] global index, KEYS[3] flow index
# ARGV: expected version, new version, state, namespace, flow_id, created_at, data, id
_SAVE_EXECUTION = """
local current = redis.call('HGET', KEYS[1], 'version')
if (current or '0') ~= ARGV[1] then
    return 0
end
redis.call('HSET', KEYS[1], 'version', ARGV[2], 'state', ARGV[3],
           'namespace', ARGV[4], 'flow_id', ARGV[5], 'data', ARGV[7])
redis.call('ZADD', KEYS[2], 'NX', ARGV[6], ARGV[8])
redis.call('ZADD', KEYS[3], 'NX', ARGV[6], ARGV[8])
return 1
"""

# KEYS[1] lease key; ARGV: owner, ttl ms
_ACQUIRE_LEASE = """
local current = redis.call('GET', KEYS[1])
if current == false or current == ARGV[1] then
    redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[2])
    return 1
end
return 0
"""

_RELEASE_LEASE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisStateStore(StateStore):
    """Redis state store using connection pooling.

    Usage:
        store = RedisStateStore("redis://localhost:6379")
        await store.connect()
        await store.save_execution(execution)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # We handle binary data
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    def __repr__(self) -> str:
        return f"RedisStateStore({self._redis_url})"

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"{PREFIX}:execution:{execution_id}"

    @staticmethod
    def _flow_index_key(namespace: str, flow_id: str) -> str:
        return f"{PREFIX}:executions:{namespace}:{flow_id}"

    @staticmethod
    def _flow_key(namespace: str, flow_id: str) -> str:
        return f"{PREFIX}:flow:{namespace}:{flow_id}"

    # ========================================================================
    # Execution Repository
    # ========================================================================

    async def save_execution(self, execution: Execution) -> Execution:
        self._check_connected()
        expected = execution.version
        execution.version = expected + 1
        try:
            saved = await self._redis.eval(
                _SAVE_EXECUTION,
                3,
                self._execution_key(execution.id),
                f"{PREFIX}:executions",
                self._flow_index_key(execution.namespace, execution.flow_id),
                str(expected),
                str(execution.version),
                execution.state.value,
                execution.namespace,
                execution.flow_id,
                execution.created_at.timestamp(),
                pickle.dumps(execution),
                execution.id,
            )
        except redis.RedisError as e:
            execution.version = expected
            raise StorageError(f"Failed to save execution {execution.id}: {e}") from e

        if not saved:
            execution.version = expected
            raise StaleWriteError(
                f"Execution {execution.id} saved at version {expected} but the store moved on"
            )
        return execution

    async def find_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()
        data = await self._redis.hget(self._execution_key(execution_id), "data")
        return pickle.loads(data) if data else None

    async def find_executions(
        self,
        state: ExecutionState | None = None,
        namespace: str | None = None,
        flow_id: str | None = None,
    ) -> list[Execution]:
        self._check_connected()
        if namespace is not None and flow_id is not None:
            ids = await self._redis.zrange(self._flow_index_key(namespace, flow_id), 0, -1)
        else:
            ids = await self._redis.zrange(f"{PREFIX}:executions", 0, -1)

        results: list[Execution] = []
        for raw_id in ids:
            fields = await self._redis.hmget(
                self._execution_key(_text(raw_id)), "state", "namespace", "flow_id", "data"
            )
            if fields[3] is None:
                continue
            if state is not None and _text(fields[0]) != state.value:
                continue
            if namespace is not None and _text(fields[1]) != namespace:
                continue
            if flow_id is not None and _text(fields[2]) != flow_id:
                continue
            results.append(pickle.loads(fields[3]))
        return results

    # ========================================================================
    # Flow Repository
    # ========================================================================

    async def save_flow(self, flow: Flow) -> None:
        self._check_connected()
        key = self._flow_key(flow.namespace, flow.id)
        existing = await self._redis.hget(key, str(flow.revision))
        check_flow_revision(pickle.loads(existing) if existing else None, flow)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, str(flow.revision), pickle.dumps(flow))
            pipe.sadd(f"{PREFIX}:flows", f"{flow.namespace}:{flow.id}")
            await pipe.execute()

    async def get_flow(self, namespace: str, flow_id: str, revision: int | None = None) -> Flow | None:
        self._check_connected()
        key = self._flow_key(namespace, flow_id)
        if revision is None:
            revisions = [int(_text(r)) for r in await self._redis.hkeys(key)]
            if not revisions:
                return None
            revision = max(revisions)
        data = await self._redis.hget(key, str(revision))
        return pickle.loads(data) if data else None

    async def list_flows(self) -> list[Flow]:
        self._check_connected()
        flows: list[Flow] = []
        for member in sorted(_text(m) for m in await self._redis.smembers(f"{PREFIX}:flows")):
            namespace, flow_id = member.rsplit(":", 1)
            flow = await self.get_flow(namespace, flow_id)
            if flow is not None:
                flows.append(flow)
        return flows

    # ========================================================================
    # Trigger State
    # ========================================================================

    async def get_watermark(self, trigger_key: str) -> Any:
        self._check_connected()
        data = await self._redis.get(f"{PREFIX}:watermark:{trigger_key}")
        return pickle.loads(data) if data else None

    async def set_watermark(self, trigger_key: str, watermark: Any) -> None:
        self._check_connected()
        await self._redis.set(f"{PREFIX}:watermark:{trigger_key}", pickle.dumps(watermark))

    async def claim_dedup(self, dedup_key: str, execution_id: str, window: float) -> str | None:
        self._check_connected()
        key = f"{PREFIX}:dedup:{dedup_key}"
        claimed = await self._redis.set(key, execution_id, nx=True, px=max(1, int(window * 1000)))
        if claimed:
            return None
        existing = await self._redis.get(key)
        if existing is None:
            # Expired between SET and GET: try once more
            claimed = await self._redis.set(key, execution_id, nx=True, px=max(1, int(window * 1000)))
            return None if claimed else _text(await self._redis.get(key))
        return _text(existing)

    # ========================================================================
    # Coordination
    # ========================================================================

    async def acquire_lease(self, name: str, owner: str, ttl: float) -> bool:
        self._check_connected()
        acquired = await self._redis.eval(
            _ACQUIRE_LEASE, 1, f"{PREFIX}:lease:{name}", owner, max(1, int(ttl * 1000))
        )
        return bool(acquired)

    async def release_lease(self, name: str, owner: str) -> bool:
        self._check_connected()
        released = await self._redis.eval(_RELEASE_LEASE, 1, f"{PREFIX}:lease:{name}", owner)
        return bool(released)

    async def lease_owner(self, name: str) -> str | None:
        self._check_connected()
        owner = await self._redis.get(f"{PREFIX}:lease:{name}")
        return _text(owner) if owner is not None else None

    async def register_member(self, group: str, member: str, ttl: float) -> None:
        self._check_connected()
        await self._redis.zadd(f"{PREFIX}:members:{group}", {member: _now_ms() + int(ttl * 1000)})

    async def remove_member(self, group: str, member: str) -> None:
        self._check_connected()
        await self._redis.zrem(f"{PREFIX}:members:{group}", member)

    async def live_members(self, group: str) -> list[str]:
        self._check_connected()
        key = f"{PREFIX}:members:{group}"
        now = _now_ms()
        await self._redis.zremrangebyscore(key, "-inf", now)
        members = await self._redis.zrangebyscore(key, now, "+inf")
        return sorted(_text(m) for m in members)

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        """Delete every pytaxis key (for testing/demos)."""
        self._check_connected()
        keys = [key async for key in self._redis.scan_iter(match=f"{PREFIX}:*")]
        if keys:
            await self._redis.delete(*keys)
