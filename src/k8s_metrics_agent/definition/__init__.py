"""Declarative metric definitions: raw group types, fetch helpers and spec tables."""

from k8s_metrics_agent.definition.fetch import (
    FetchedValues,
    FetchFunc,
    RawGroups,
    RawMetrics,
    from_raw,
    transform,
)
from k8s_metrics_agent.definition.spec import MetricSpec, SourceType, SpecGroup, SpecGroups

__all__ = [
    "FetchFunc",
    "FetchedValues",
    "MetricSpec",
    "RawGroups",
    "RawMetrics",
    "SourceType",
    "SpecGroup",
    "SpecGroups",
    "from_raw",
    "transform",
]
