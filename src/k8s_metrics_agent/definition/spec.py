"""Metric specification tables."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from k8s_metrics_agent.definition.fetch import FetchFunc, RawGroups, RawMetrics

EntityIDGenerator = Callable[[str, str, RawGroups], str]
EntityTypeGenerator = Callable[[str, str, RawGroups, str], str]
NamespaceGetter = Callable[[RawMetrics], str]
MetricSetTypeGuesser = Callable[[str], str]


class SourceType(str, Enum):
    """How the downstream agent interprets consecutive samples of a metric."""

    GAUGE = "gauge"
    DELTA = "delta"
    RATE = "rate"
    ATTRIBUTE = "attribute"


@dataclass(frozen=True)
class MetricSpec:
    name: str
    value_func: FetchFunc
    source_type: SourceType
    optional: bool = False


@dataclass(frozen=True)
class SpecGroup:
    """Specs shared by every entity of one group, plus how to name those entities.

    Without an ``id_generator`` the raw entity ID is used as the public ID.
    """

    specs: list[MetricSpec] = field(default_factory=list)
    id_generator: EntityIDGenerator | None = None
    type_generator: EntityTypeGenerator | None = None
    namespace_getter: NamespaceGetter | None = None
    ms_type_guesser: MetricSetTypeGuesser | None = None


SpecGroups = dict[str, SpecGroup]
