"""In-memory storage implementation for pytaxis.

Design Pattern: Adapter Pattern
InMemoryStateStore adapts in-memory dictionaries to the StateStore interface.

Instance is immediately usable after __init__. Records are deep-copied on
the way in and out so callers never share mutable state with the store.
"""

from __future__ import annotations

import asyncio
import copy
import heapq
import itertools
import time
from typing import Any

from pytaxis.models import Execution, ExecutionState, Flow
from pytaxis.storage.base import StateStore, check_flow_revision, check_version


class InMemoryStateStore(StateStore):
    """In-memory storage for testing and single-process deployments.

    Can be substituted for SqliteStateStore without changing client code.

    Usage:
        store = InMemoryStateStore()
        await store.save_execution(execution)
        final = await store.wait_for_terminal(execution.id)
    """

    def __init__(self, clock=time.monotonic):
        # Storage: {execution_id: Execution}
        self._executions: dict[str, Execution] = {}

        # Storage: {(namespace, flow_id): {revision: Flow}}
        self._flows: dict[tuple[str, str], dict[int, Flow]] = {}

        self._watermarks: dict[str, Any] = {}

        # {key: (value, expires_at)}
        self._dedup: dict[str, tuple[str, float]] = {}
        self._leases: dict[str, tuple[str, float]] = {}
        self._members: dict[str, dict[str, float]] = {}

        # Expiry schedule over the three tables above: (expires_at, seq, table, key)
        self._expiry: list[tuple[float, int, str, Any]] = []
        self._sequence = itertools.count()

        self._clock = clock
        self._lock = asyncio.Lock()

        # Status notification uses Condition for race-free wait_for(predicate) pattern
        self._status_notify = asyncio.Condition(self._lock)

    def __repr__(self) -> str:
        return "InMemoryStateStore"

    # ========================================================================
    # Execution Repository
    # ========================================================================

    async def save_execution(self, execution: Execution) -> Execution:
        async with self._lock:
            stored = self._executions.get(execution.id)
            check_version(execution, stored.version if stored is not None else None)
            execution.version += 1
            self._executions[execution.id] = copy.deepcopy(execution)
            self._status_notify.notify_all()
        return execution

    async def find_execution(self, execution_id: str) -> Execution | None:
        async with self._lock:
            stored = self._executions.get(execution_id)
            return copy.deepcopy(stored) if stored is not None else None

    async def find_executions(
        self,
        state: ExecutionState | None = None,
        namespace: str | None = None,
        flow_id: str | None = None,
    ) -> list[Execution]:
        async with self._lock:
            matches = [
                execution
                for execution in self._executions.values()
                if (state is None or execution.state is state)
                and (namespace is None or execution.namespace == namespace)
                and (flow_id is None or execution.flow_id == flow_id)
            ]
            matches.sort(key=lambda e: e.created_at)
            return copy.deepcopy(matches)

    async def wait_for_terminal(self, execution_id: str) -> Execution:
        """Wait for an Execution to become terminal (race-free).

        Uses asyncio.Condition with manual check-wait loop pattern.
        The condition's lock ensures no race between status check and wait.
        """
        async with self._status_notify:
            while True:
                stored = self._executions.get(execution_id)
                if stored is not None and stored.is_terminal:
                    return copy.deepcopy(stored)
                await self._status_notify.wait()

    # ========================================================================
    # Flow Repository
    # ========================================================================

    async def save_flow(self, flow: Flow) -> None:
        async with self._lock:
            revisions = self._flows.setdefault((flow.namespace, flow.id), {})
            check_flow_revision(revisions.get(flow.revision), flow)
            revisions[flow.revision] = flow

    async def get_flow(self, namespace: str, flow_id: str, revision: int | None = None) -> Flow | None:
        async with self._lock:
            revisions = self._flows.get((namespace, flow_id))
            if not revisions:
                return None
            if revision is None:
                return revisions[max(revisions)]
            return revisions.get(revision)

    async def list_flows(self) -> list[Flow]:
        async with self._lock:
            return [revisions[max(revisions)] for revisions in self._flows.values() if revisions]

    # ========================================================================
    # Trigger State
    # ========================================================================

    async def get_watermark(self, trigger_key: str) -> Any:
        async with self._lock:
            return copy.deepcopy(self._watermarks.get(trigger_key))

    async def set_watermark(self, trigger_key: str, watermark: Any) -> None:
        async with self._lock:
            self._watermarks[trigger_key] = copy.deepcopy(watermark)

    async def claim_dedup(self, dedup_key: str, execution_id: str, window: float) -> str | None:
        async with self._lock:
            now = self._clock()
            existing = self._dedup.get(dedup_key)
            if existing is not None and existing[1] > now:
                return existing[0]
            self._expire(now)
            self._dedup[dedup_key] = (execution_id, now + window)
            self._schedule_expiry(now + window, "dedup", dedup_key)
            return None

    # ========================================================================
    # Coordination
    # ========================================================================

    async def acquire_lease(self, name: str, owner: str, ttl: float) -> bool:
        async with self._lock:
            now = self._clock()
            current = self._leases.get(name)
            if current is not None and current[0] != owner and current[1] > now:
                return False
            self._expire(now)
            self._leases[name] = (owner, now + ttl)
            self._schedule_expiry(now + ttl, "lease", name)
            return True

    async def release_lease(self, name: str, owner: str) -> bool:
        async with self._lock:
            current = self._leases.get(name)
            if current is None or current[0] != owner:
                return False
            del self._leases[name]
            return True

    async def lease_owner(self, name: str) -> str | None:
        async with self._lock:
            current = self._leases.get(name)
            if current is None or current[1] <= self._clock():
                return None
            return current[0]

    async def register_member(self, group: str, member: str, ttl: float) -> None:
        async with self._lock:
            now = self._clock()
            self._expire(now)
            self._members.setdefault(group, {})[member] = now + ttl
            self._schedule_expiry(now + ttl, "member", (group, member))

    async def remove_member(self, group: str, member: str) -> None:
        async with self._lock:
            self._members.get(group, {}).pop(member, None)

    async def live_members(self, group: str) -> list[str]:
        async with self._lock:
            now = self._clock()
            return sorted(m for m, expires in self._members.get(group, {}).items() if expires > now)

    def _schedule_expiry(self, expires_at: float, table: str, key: Any) -> None:
        heapq.heappush(self._expiry, (expires_at, next(self._sequence), table, key))

    def _expire(self, now: float) -> None:
        """Drop dedup claims, leases and members whose TTL has passed.

        Renewals leave older schedule entries behind; an entry only removes
        its record when the record itself has expired.
        """
        while self._expiry and self._expiry[0][0] <= now:
            _, _, table, key = heapq.heappop(self._expiry)
            if table == "member":
                group, member = key
                members = self._members.get(group, {})
                if members.get(member, now + 1) <= now:
                    del members[member]
                    if not members:
                        del self._members[group]
                continue
            records = self._dedup if table == "dedup" else self._leases
            record = records.get(key)
            if record is not None and record[1] <= now:
                del records[key]

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def reset(self) -> None:
        async with self._lock:
            self._executions.clear()
            self._flows.clear()
            self._watermarks.clear()
            self._dedup.clear()
            self._leases.clear()
            self._members.clear()
            self._expiry.clear()

    async def close(self) -> None:
        pass
