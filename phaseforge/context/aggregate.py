"""Aggregate collection arithmetic.

A collection maps a stage id (e.g. ``realize_correct``) to the function-calling
metric and token usage spent in that stage, plus a ``total`` bucket. Every
increment touches the stage bucket and the total together; reductions and
subtractions recompute the total from the stages so the two never drift.
"""

from __future__ import annotations

from typing import Iterable, Optional

from phaseforge.core.models import (
    AggregateCollection,
    FunctionCallingMetric,
    Phase,
    ProcessAggregate,
    TokenUsageComponent,
)


def create_aggregate() -> ProcessAggregate:
    return ProcessAggregate()


def create_collection() -> AggregateCollection:
    return AggregateCollection()


def _bucket(collection: AggregateCollection, stage: str) -> ProcessAggregate:
    if stage not in collection.stages:
        collection.stages[stage] = create_aggregate()
    return collection.stages[stage]


def accumulate_metric(
    collection: AggregateCollection,
    stage: str,
    key: str,
    amount: int = 1,
) -> None:
    """Bump one metric counter of ``stage`` and the total."""
    _bucket(collection, stage).metric.add(key, amount)
    collection.total.metric.add(key, amount)


def accumulate_usage(
    collection: AggregateCollection,
    stage: str,
    usage: TokenUsageComponent,
) -> None:
    _bucket(collection, stage).token_usage.increment(usage)
    collection.total.token_usage.increment(usage)


def emplace(
    collection: AggregateCollection,
    stage: str,
    metric: FunctionCallingMetric,
    usage: TokenUsageComponent,
) -> None:
    """Fold a whole stage result (metric + usage) into the collection."""
    local = _bucket(collection, stage)
    local.metric.increment(metric)
    local.token_usage.increment(usage)
    collection.total.metric.increment(metric)
    collection.total.token_usage.increment(usage)


def compute_total(collection: AggregateCollection) -> ProcessAggregate:
    total = create_aggregate()
    for value in collection.stages.values():
        total.increment(value)
    return total


def reduce_collections(collections: Iterable[AggregateCollection]) -> AggregateCollection:
    """Stage-wise sum of several collections."""
    result = create_collection()
    for collection in collections:
        for stage, value in collection.stages.items():
            _bucket(result, stage).increment(value)
    result.total = compute_total(result)
    return result


def subtract_collections(
    minuend: AggregateCollection,
    subtrahend: AggregateCollection,
) -> AggregateCollection:
    """Stage-wise ``minuend - subtrahend``; the total is recomputed."""
    result = minuend.model_copy(deep=True)
    for stage, value in subtrahend.stages.items():
        local = _bucket(result, stage)
        local.metric = local.metric.minus(value.metric)
        local.token_usage = local.token_usage.minus(value.token_usage)
    result.total = compute_total(result)
    return result


def filter_phase(collection: AggregateCollection, phase: Optional[Phase]) -> AggregateCollection:
    """Keep only the stages belonging to ``phase`` (prefix match)."""
    result = create_collection()
    for stage, value in collection.stages.items():
        if phase is not None and not stage.startswith(phase.value):
            continue
        result.stages[stage] = value.model_copy(deep=True)
        result.total.increment(value)
    return result
