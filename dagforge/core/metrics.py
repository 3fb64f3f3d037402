from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TASK_TRANSITIONS_TOTAL = Counter(
    "dagforge_task_transitions_total",
    "Task status transitions grouped by the status entered",
    labelnames=("status",),
)

TASK_ATTEMPT_LATENCY_SECONDS = Histogram(
    "dagforge_task_attempt_latency_seconds",
    "Latency of a single task attempt grouped by outcome",
    labelnames=("outcome",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

TOOL_INVOCATIONS_TOTAL = Counter(
    "dagforge_tool_invocations_total",
    "Gateway tool invocations grouped by tool and outcome",
    labelnames=("tool", "outcome"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "dagforge_tool_latency_seconds",
    "Provider round-trip latency per tool",
    labelnames=("tool",),
)

DECOMPOSITIONS_TOTAL = Counter(
    "dagforge_decompositions_total",
    "Objective decompositions grouped by outcome",
    labelnames=("outcome",),
)

DECOMPOSITION_SUBTASKS = Histogram(
    "dagforge_decomposition_subtasks",
    "Number of subtasks produced per accepted decomposition",
    buckets=(1, 2, 3, 5, 8, 13, 21, 34),
)

GRAPH_RUNS_TOTAL = Counter(
    "dagforge_graph_runs_total",
    "Graph runs grouped by final status",
    labelnames=("status",),
)

GRAPH_RUNS_ACTIVE = Gauge(
    "dagforge_graph_runs_active",
    "Graph runs currently executing",
)


def record_task_transition(*, status: str) -> None:
    TASK_TRANSITIONS_TOTAL.labels(status=status).inc()


def observe_task_attempt(*, outcome: str, latency: float) -> None:
    TASK_ATTEMPT_LATENCY_SECONDS.labels(outcome=outcome).observe(max(0.0, latency))


def record_tool_invocation(*, tool: str, outcome: str, latency: float | None = None) -> None:
    TOOL_INVOCATIONS_TOTAL.labels(tool=tool, outcome=outcome).inc()
    if latency is not None:
        TOOL_LATENCY_SECONDS.labels(tool=tool).observe(max(0.0, latency))


def record_decomposition(*, outcome: str, subtasks: int | None = None) -> None:
    DECOMPOSITIONS_TOTAL.labels(outcome=outcome).inc()
    if subtasks is not None:
        DECOMPOSITION_SUBTASKS.observe(max(0, subtasks))


def mark_graph_run_started() -> None:
    GRAPH_RUNS_ACTIVE.inc()


def mark_graph_run_finished(*, status: str) -> None:
    GRAPH_RUNS_ACTIVE.dec()
    GRAPH_RUNS_TOTAL.labels(status=status).inc()
