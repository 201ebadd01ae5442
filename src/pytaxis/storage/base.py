"""
StateStore - abstract interface for storage backends.

Design Pattern: Adapter Pattern
StateStore defines the target interface that all storage adapters implement.
Different storage backends (SQLite, Redis, Memory) adapt to this common
interface; the Scheduler, Executor and Worker depend on the abstraction only.

Responsibilities, grouped the way the control loops use them:
- Execution repository: versioned save/find of Execution records
- Flow repository: immutable Flow revisions
- Trigger state: watermarks and dedup claims
- Coordination: named leases with TTL and membership records

Design Principle: Interface Segregation
Blob payloads are not part of this interface; see pytaxis.storage.blob.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from pytaxis.errors import StaleWriteError, StorageError
from pytaxis.models import Execution, ExecutionState, Flow

__all__ = ["StateStore", "StorageError", "StaleWriteError"]


class StateStore(ABC):
    """
    Abstract storage interface for orchestration state.

    Usage:
        store = InMemoryStateStore()
        await store.save_flow(flow)
        execution = Execution.create(flow)
        await store.save_execution(execution)   # version 0 -> 1
        snapshot = await store.find_execution(execution.id)
    """

    terminal_poll_interval: float = 0.05
    """Seconds between store reads in the default wait_for_terminal()."""

    # ========================================================================
    # Execution Repository
    # ========================================================================

    @abstractmethod
    async def save_execution(self, execution: Execution) -> Execution:
        """
        Persist an Execution with optimistic concurrency control.

        The stored version must equal `execution.version` (0 for a new
        record). On success the version is incremented on both the stored
        copy and the passed object.

        Returns:
            The saved Execution (same object, version bumped)

        Raises:
            StaleWriteError: If another writer saved a newer version
            StorageError: If the backend fails
        """
        pass

    @abstractmethod
    async def find_execution(self, execution_id: str) -> Execution | None:
        """Return a snapshot of an Execution, or None if unknown."""
        pass

    @abstractmethod
    async def find_executions(
        self,
        state: ExecutionState | None = None,
        namespace: str | None = None,
        flow_id: str | None = None,
    ) -> list[Execution]:
        """Return Executions matching every given filter, oldest first."""
        pass

    async def count_active(self, namespace: str, flow_id: str) -> int:
        """Number of Executions of a Flow holding a concurrency slot."""
        executions = await self.find_executions(namespace=namespace, flow_id=flow_id)
        return sum(1 for execution in executions if execution.state.is_active)

    async def next_queued(self, namespace: str, flow_id: str) -> Execution | None:
        """Oldest QUEUED Execution of a Flow."""
        queued = await self.find_executions(
            state=ExecutionState.QUEUED, namespace=namespace, flow_id=flow_id
        )
        return queued[0] if queued else None

    async def wait_for_terminal(self, execution_id: str) -> Execution:
        """
        Wait until an Execution reaches a terminal state.

        Polls every `terminal_poll_interval` by default; backends with
        in-process change notification override this with an event-driven
        wait. Wrap the call in `asyncio.wait_for` to bound it.
        """
        while True:
            execution = await self.find_execution(execution_id)
            if execution is not None and execution.is_terminal:
                return execution
            await asyncio.sleep(self.terminal_poll_interval)

    # ========================================================================
    # Flow Repository
    # ========================================================================

    @abstractmethod
    async def save_flow(self, flow: Flow) -> None:
        """
        Store a Flow revision.

        Revisions are immutable: saving a different definition under an
        existing (namespace, id, revision) raises StorageError.
        """
        pass

    @abstractmethod
    async def get_flow(self, namespace: str, flow_id: str, revision: int | None = None) -> Flow | None:
        """Return a Flow revision, the latest one when `revision` is None."""
        pass

    @abstractmethod
    async def list_flows(self) -> list[Flow]:
        """Return the latest revision of every Flow."""
        pass

    # ========================================================================
    # Trigger State
    # ========================================================================

    @abstractmethod
    async def get_watermark(self, trigger_key: str) -> Any:
        """Return the persisted watermark of a trigger, None if never observed."""
        pass

    @abstractmethod
    async def set_watermark(self, trigger_key: str, watermark: Any) -> None:
        pass

    @abstractmethod
    async def claim_dedup(self, dedup_key: str, execution_id: str, window: float) -> str | None:
        """
        Atomically claim a dedup key for `window` seconds.

        Returns:
            None if the claim succeeded, otherwise the execution id recorded
            by the live existing claim
        """
        pass

    # ========================================================================
    # Coordination
    # ========================================================================

    @abstractmethod
    async def acquire_lease(self, name: str, owner: str, ttl: float) -> bool:
        """
        Acquire or renew a named lease.

        Succeeds when the lease is free, expired, or already held by `owner`
        (in which case it is renewed for `ttl` seconds).
        """
        pass

    @abstractmethod
    async def release_lease(self, name: str, owner: str) -> bool:
        """Release a lease if held by `owner`; returns False otherwise."""
        pass

    @abstractmethod
    async def lease_owner(self, name: str) -> str | None:
        """Current live owner of a lease."""
        pass

    @abstractmethod
    async def register_member(self, group: str, member: str, ttl: float) -> None:
        """Record (or refresh) a live member of a group for `ttl` seconds."""
        pass

    @abstractmethod
    async def remove_member(self, group: str, member: str) -> None:
        pass

    @abstractmethod
    async def live_members(self, group: str) -> list[str]:
        """Members of a group whose record has not expired, sorted."""
        pass

    # ========================================================================
    # Utility Operations
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """
        Clear all data (for testing/demos).

        Warning: Destructive operation - only use in testing!
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage connections and clean up resources."""
        pass


def check_version(execution: Execution, stored_version: int | None) -> None:
    """Raise StaleWriteError unless `execution` was read at the stored version."""
    expected = stored_version or 0
    if execution.version != expected:
        raise StaleWriteError(
            f"Execution {execution.id} saved at version {execution.version}, "
            f"store has version {expected}"
        )


def check_flow_revision(existing: Flow | None, flow: Flow) -> None:
    if existing is not None and existing != flow:
        raise StorageError(
            f"Flow {flow.uid} revision {flow.revision} already exists with a different definition"
        )
