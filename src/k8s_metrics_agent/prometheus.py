"""Prometheus metric families: query filtering, grouping by spec and value functions.

Parsing of the exposition format is left to ``prometheus_client``; this module only turns the
parsed families into the raw groups the populator consumes.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from prometheus_client.parser import text_string_to_metric_families

from k8s_metrics_agent.clients import HTTPClient
from k8s_metrics_agent.definition.fetch import FetchedValues, FetchFunc, RawGroups, from_raw
from k8s_metrics_agent.definition.spec import EntityIDGenerator, EntityTypeGenerator, SpecGroups
from k8s_metrics_agent.errors import FetchError

log = structlog.get_logger()

METRICS_PATH = "/metrics"

Labels = dict[str, str]
LabelsFilter = Callable[[Labels], Labels]


@dataclass(frozen=True)
class Summary:
    count: float
    sum: float
    quantiles: dict[float, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Metric:
    labels: Labels
    value: float | Summary | None


@dataclass(frozen=True)
class MetricFamily:
    name: str
    type: str
    metrics: list[Metric]


class QueryOperator(Enum):
    AND = "and"
    NOR = "nor"


@dataclass(frozen=True)
class QueryLabels:
    labels: Labels = field(default_factory=dict)
    operator: QueryOperator = QueryOperator.AND


@dataclass(frozen=True)
class QueryValue:
    value: float | None = None
    operator: QueryOperator = QueryOperator.AND


@dataclass(frozen=True)
class Query:
    """Selects the series of one metric family, optionally filtered by labels and value.

    ``custom_name`` renames the resulting family.
    """

    metric_name: str
    custom_name: str = ""
    labels: QueryLabels = field(default_factory=QueryLabels)
    value: QueryValue = field(default_factory=QueryValue)

    def execute(self, family: MetricFamily) -> MetricFamily | None:
        if family.name != self.metric_name or not family.metrics:
            return None

        matches = []
        for metric in family.metrics:
            if self.labels.labels:
                labels_in = all(metric.labels.get(k) == v for k, v in self.labels.labels.items())
                if labels_in != (self.labels.operator is QueryOperator.AND):
                    continue
            if self.value.value is not None:
                equal = metric.value == self.value.value
                if equal != (self.value.operator is QueryOperator.AND):
                    continue
            matches.append(metric)

        return MetricFamily(name=self.custom_name or family.name, type=family.type, metrics=matches)


def parse_metric_families(text: str) -> list[MetricFamily]:
    """Parse exposition text into families keyed by the exposed series name."""
    families = []
    for parsed in text_string_to_metric_families(text):
        if parsed.type == "summary":
            families.append(_summary_family(parsed))
            continue

        name = parsed.name
        if parsed.type == "counter" and any(s.name == f"{name}_total" for s in parsed.samples):
            name = f"{name}_total"
        metrics = [Metric(labels=dict(s.labels), value=float(s.value)) for s in parsed.samples if s.name == name]
        families.append(MetricFamily(name=name, type=parsed.type, metrics=metrics))
    return families


def _summary_family(parsed: Any) -> MetricFamily:
    by_labels: dict[tuple[tuple[str, str], ...], dict[str, Any]] = {}
    for sample in parsed.samples:
        labels = {k: v for k, v in sample.labels.items() if k != "quantile"}
        entry = by_labels.setdefault(tuple(sorted(labels.items())), {"count": 0.0, "sum": math.nan, "quantiles": {}})
        if sample.name == f"{parsed.name}_count":
            entry["count"] = float(sample.value)
        elif sample.name == f"{parsed.name}_sum":
            entry["sum"] = float(sample.value)
        elif "quantile" in sample.labels:
            entry["quantiles"][float(sample.labels["quantile"])] = float(sample.value)

    metrics = [Metric(labels=dict(key), value=Summary(**entry)) for key, entry in by_labels.items()]
    return MetricFamily(name=parsed.name, type="summary", metrics=metrics)


def fetch_metric_families(
    client: HTTPClient, queries: Iterable[Query], path: str = METRICS_PATH
) -> list[MetricFamily]:
    """GET ``path`` and keep only the families the queries select."""
    response = client.get(path)
    response.raise_for_status()
    families = parse_metric_families(response.text)

    queries = list(queries)
    filtered = []
    for family in families:
        for query in queries:
            result = query.execute(family)
            if result is not None and result.metrics:
                filtered.append(result)
    log.debug("metric_families_fetched", path=path, parsed=len(families), kept=len(filtered))
    return filtered


def group_metrics_by_spec(specs: SpecGroups, families: Iterable[MetricFamily]) -> tuple[RawGroups, list[Exception]]:
    """Group series by the entity their labels identify.

    Namespaces and nodes are keyed by the label value, containers by
    ``namespace_pod_container`` and everything else by ``namespace_<label value>``.
    A spec group without any matching series yields an error.
    """
    families = list(families)
    groups: RawGroups = {}
    errors: list[Exception] = []
    for group_label in specs:
        for family in families:
            for metric in family.metrics:
                if group_label not in metric.labels:
                    continue
                labels = metric.labels
                if group_label in ("namespace", "node"):
                    raw_entity_id = labels[group_label]
                elif group_label == "container":
                    raw_entity_id = f"{labels.get('namespace', '')}_{labels.get('pod', '')}_{labels[group_label]}"
                else:
                    raw_entity_id = f"{labels.get('namespace', '')}_{labels[group_label]}"
                groups.setdefault(group_label, {}).setdefault(raw_entity_id, {})[family.name] = metric

        if not groups.get(group_label):
            errors.append(FetchError(f"no data found for {group_label} object"))

    return groups, errors


def ignore_labels_filter(*labels_to_ignore: str) -> LabelsFilter:
    def keep(labels: Labels) -> Labels:
        return {k: v for k, v in labels.items() if k not in labels_to_ignore}

    return keep


def include_only_labels_filter(*labels_to_include: str) -> LabelsFilter:
    def keep(labels: Labels) -> Labels:
        return {k: v for k, v in labels.items() if k in labels_to_include}

    return keep


def suffix_labels_in_order(metric_name: str, labels: Labels) -> str:
    """``my_metric`` with ``{l2: b, l1: a}`` becomes ``my_metric_l1_a_l2_b``."""
    return "_".join([metric_name, *sorted(f"{k}_{v}" for k, v in labels.items())])


def from_value(metric_name: str, *labels_filters: LabelsFilter, name_override: str = "") -> FetchFunc:
    """Value of a single series, or one value per series for lists of series.

    For lists the metric names get the series labels suffixed in order; series that end up with
    the same name are summed.
    """
    fetch_raw = from_raw(metric_name)

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        value = fetch_raw(group_label, entity_id, groups)
        if isinstance(value, Metric):
            return value.value
        if isinstance(value, list):
            values = FetchedValues()
            for metric in value:
                labels = metric.labels
                for labels_filter in labels_filters:
                    labels = labels_filter(labels)
                name = suffix_labels_in_order(name_override or metric_name, labels)
                values[name] = values.get(name, 0) + metric.value
            return values
        raise FetchError(f"incompatible metric type for {metric_name}: {type(value).__name__}")

    return fetch


def from_label_value(key: str, label: str) -> FetchFunc:
    """Value of ``label`` on the series stored under ``key``."""
    fetch_raw = from_raw(key)

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        value = fetch_raw(group_label, entity_id, groups)
        if not isinstance(value, Metric):
            raise FetchError(f"incompatible metric type, expected Metric, got {type(value).__name__}")
        if label not in value.labels:
            raise FetchError("label not found in prometheus metric")
        return value.labels[label]

    return fetch


def from_summary(key: str) -> FetchFunc:
    """Count, sum and quantiles of every summary series stored under ``key``.

    NaN and infinite values are left out.
    """
    fetch_raw = from_raw(key)

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        value = fetch_raw(group_label, entity_id, groups)
        metrics = value if isinstance(value, list) else [value]
        values = FetchedValues()
        for metric in metrics:
            summary = getattr(metric, "value", None)
            if not isinstance(summary, Summary):
                raise FetchError(f"incompatible metric type for {key}, expected a summary")
            name = suffix_labels_in_order(key, metric.labels)
            values[f"{name}_count"] = summary.count
            if math.isfinite(summary.sum):
                values[f"{name}_sum"] = summary.sum
            for quantile, quantile_value in summary.quantiles.items():
                if math.isfinite(quantile_value):
                    values[f"{name}_quantile_{quantile:g}"] = quantile_value
        return values

    return fetch


def from_label_value_entity_id_generator(key: str, label: str) -> EntityIDGenerator:
    fetch = from_label_value(key, label)

    def generate(group_label: str, raw_entity_id: str, groups: RawGroups) -> str:
        try:
            return fetch(group_label, raw_entity_id, groups)
        except FetchError as err:
            raise FetchError(f"cannot fetch label {label} for metric {key}, {err}") from err

    return generate


def from_label_value_entity_type_generator(key: str) -> EntityTypeGenerator:
    """Entity type from the ``namespace`` (and ``pod``) labels of the series under ``key``."""

    def generate(group_label: str, raw_entity_id: str, groups: RawGroups, cluster_name: str) -> str:
        if group_label in ("namespace", "node"):
            return f"k8s:{cluster_name}:{group_label}"

        namespace = from_label_value_entity_id_generator(key, "namespace")(group_label, raw_entity_id, groups)
        if not namespace:
            raise FetchError(f"empty namespace for generated entity type for {group_label!r}")
        if group_label == "container":
            pod = from_label_value_entity_id_generator(key, "pod")(group_label, raw_entity_id, groups)
            if not pod:
                raise FetchError(f"empty values for generated entity type for {group_label!r}")
            return f"k8s:{cluster_name}:{namespace}:{pod}:{group_label}"
        return f"k8s:{cluster_name}:{namespace}:{group_label}"

    return generate


def control_plane_component_type_generator(
    group_label: str, _raw_entity_id: str, _groups: RawGroups, cluster_name: str
) -> str:
    return f"k8s:{cluster_name}:controlplane:{group_label}"


def from_metric_with_prefixed_labels(key: str, prefix: str) -> FetchFunc:
    """Labels named ``<prefix>_<name>`` on the series under ``key``, as ``<prefix>.<name>`` attributes."""
    fetch_raw = from_raw(key)
    label_prefix = f"{prefix}_"

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        value = fetch_raw(group_label, entity_id, groups)
        if not isinstance(value, Metric):
            raise FetchError(f"incompatible metric type, expected Metric, got {type(value).__name__}")
        return FetchedValues(
            {f"{prefix}.{k[len(label_prefix):]}": v for k, v in value.labels.items() if k.startswith(label_prefix)}
        )

    return fetch
