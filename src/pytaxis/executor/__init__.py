"""
Control loops of pytaxis.

This module contains:
- Executor: single writer of Execution state, drives the state machine
- Worker: runs task attempts and evaluates polling triggers
- Scheduler: turns trigger fires and manual submissions into Executions
- ExecutionMachine: the pure Execution state machine
- HashRing: consistent hashing for trigger ownership
"""

from pytaxis.executor.executor import Executor, ExecutorHandle, subflow_execution_id
from pytaxis.executor.lease import HashRing, stable_hash
from pytaxis.executor.scheduler import Scheduler, SchedulerHandle, dedup_key, trigger_key
from pytaxis.executor.state import ExecutionMachine, Outgoing, fold_outcome, map_child_state
from pytaxis.executor.worker import Worker, WorkerHandle

__all__ = [
    "Executor",
    "ExecutorHandle",
    "subflow_execution_id",
    "HashRing",
    "stable_hash",
    "Scheduler",
    "SchedulerHandle",
    "dedup_key",
    "trigger_key",
    "ExecutionMachine",
    "Outgoing",
    "fold_outcome",
    "map_child_state",
    "Worker",
    "WorkerHandle",
]
