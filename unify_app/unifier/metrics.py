"""Prometheus metrics helpers for the unification engine."""

from __future__ import annotations

from typing import Literal, Mapping

from prometheus_client import Counter, Gauge, Histogram

_records_counter = Counter(
    "unifier_records_total",
    "Raw contact records handled by the unifier, by source and outcome.",
    ["source", "outcome"],
)
_micro_batch_counter = Counter(
    "unifier_micro_batches_total",
    "Micro-batch commits by source and result.",
    ["source", "result"],
)
_chunk_duration = Histogram(
    "unifier_chunk_duration_seconds",
    "Wall-clock duration of one unification chunk.",
    buckets=(1, 5, 10, 20, 30, 45, 60, 90, 120),
)
_run_transitions = Counter(
    "unifier_run_transitions_total",
    "Sync run status transitions.",
    ["status"],
)
_dispatch_counter = Counter(
    "unifier_continuation_dispatch_total",
    "Continuation chunk dispatch attempts by outcome.",
    ["outcome"],
)
_pending_gauge = Gauge(
    "unifier_pending_records",
    "Unprocessed raw records per source at the last ground-truth count.",
    ["source"],
)


def record_outcomes(source: str, outcomes: Mapping[str, int]) -> None:
    """Increment the per-record counter for every non-zero outcome."""

    for outcome, count in outcomes.items():
        if count:
            _records_counter.labels(source=source, outcome=outcome).inc(count)


def record_micro_batch(source: str, result: Literal["committed", "retried", "replayed"]) -> None:
    _micro_batch_counter.labels(source=source, result=result).inc()


def record_chunk_duration(duration_seconds: float) -> None:
    _chunk_duration.observe(max(0.0, duration_seconds))


def record_run_transition(status: str) -> None:
    _run_transitions.labels(status=status).inc()


def record_dispatch(outcome: Literal["queued", "retry", "failed"]) -> None:
    _dispatch_counter.labels(outcome=outcome).inc()


def record_pending(counts: Mapping[str, int]) -> None:
    """Set the pending gauge; ``total`` is derived, not exported."""

    for source, count in counts.items():
        if source == "total":
            continue
        _pending_gauge.labels(source=source).set(count)


__all__ = [
    "record_chunk_duration",
    "record_dispatch",
    "record_micro_batch",
    "record_outcomes",
    "record_pending",
    "record_run_transition",
]
