"""
Orchestration package

Objective decomposition and dependency-graph execution:
- Objective decomposition into a validated task graph
- Capability-based agent dispatch
- Bounded-concurrency scheduling with retries, timeouts and failure cascade
- Durable graph state and crash recovery
"""

from .decomposer import ObjectiveDecomposer
from .dispatcher import AgentDispatcher, InvocationHandle
from .engine import GraphStatusReport, TaskGraphEngine
from .enums import GraphStatus, TaskStatus
from .errors import (
    DecompositionError,
    DecompositionErrorKind,
    DispatcherError,
    DispatcherErrorKind,
    GraphNotFoundError,
)
from .scheduler import DependencyScheduler, GraphRun, GraphSnapshot, RetryPolicy
from .state import Task, TaskError, TaskGraph, TaskRetryPolicy
from .store import GraphStateStore, InMemoryGraphStore, PostgresGraphStore

__all__ = [
    "AgentDispatcher",
    "DecompositionError",
    "DecompositionErrorKind",
    "DependencyScheduler",
    "DispatcherError",
    "DispatcherErrorKind",
    "GraphNotFoundError",
    "GraphRun",
    "GraphSnapshot",
    "GraphStateStore",
    "GraphStatus",
    "GraphStatusReport",
    "InMemoryGraphStore",
    "InvocationHandle",
    "ObjectiveDecomposer",
    "PostgresGraphStore",
    "RetryPolicy",
    "Task",
    "TaskError",
    "TaskGraph",
    "TaskGraphEngine",
    "TaskRetryPolicy",
    "TaskStatus",
]
