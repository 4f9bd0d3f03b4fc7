"""Turns raw groups and spec tables into entities and metric sets."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from k8s_metrics_agent.definition.fetch import FetchedValues, RawGroups
from k8s_metrics_agent.definition.generators import metric_set_type_guesser
from k8s_metrics_agent.definition.spec import MetricSetTypeGuesser, MetricSpec, SourceType, SpecGroup, SpecGroups
from k8s_metrics_agent.errors import AgentError, PopulateError
from k8s_metrics_agent.integration import Entity, Integration, MetricSet

log = structlog.get_logger()

NAMESPACE_GROUP = "namespace"
NAMESPACE_FILTERED_LABEL = "nrFiltered"
CLUSTER_ENTITY_TYPE = "k8s:cluster"

# Errors a value function or a metric set may raise for bad data.
_DATA_ERRORS = (AgentError, ValueError, TypeError, KeyError, ArithmeticError)


class NamespaceFilter(Protocol):
    def is_allowed(self, namespace: str) -> bool:
        ...


class NamespaceAllowList:
    """Allows only the listed namespaces; an empty list allows everything."""

    def __init__(self, namespaces: Iterable[str]) -> None:
        self._namespaces = frozenset(namespaces)

    def is_allowed(self, namespace: str) -> bool:
        return not self._namespaces or namespace in self._namespaces


@dataclass
class PopulateResult:
    populated: bool = False
    errors: list[Exception] = field(default_factory=list)


def populate(
    integration: Integration,
    cluster_name: str,
    k8s_version: str,
    groups: RawGroups,
    specs: SpecGroups,
    *,
    ms_type_guesser: MetricSetTypeGuesser = metric_set_type_guesser,
    namespace_filter: NamespaceFilter | None = None,
) -> PopulateResult:
    """Populate ``integration`` with one entity per raw entity that has a matching spec group.

    Failures are collected per entity and per metric; a failing metric never stops its
    siblings. When anything was populated a cluster entity is added as well.
    """
    result = PopulateResult()

    for group_label, entities in groups.items():
        spec_group = specs.get(group_label)
        if spec_group is None:
            continue

        for raw_entity_id, metrics in entities.items():
            extra_attributes: dict[str, str] = {}
            if namespace_filter is not None and spec_group.namespace_getter is not None:
                namespace = spec_group.namespace_getter(metrics)
                allowed = namespace_filter.is_allowed(namespace)
                if group_label != NAMESPACE_GROUP:
                    if not allowed:
                        log.debug("entity_filtered", group=group_label, entity=raw_entity_id, namespace=namespace)
                        continue
                else:
                    extra_attributes[NAMESPACE_FILTERED_LABEL] = str(not allowed).lower()

            try:
                entity = _entity_for(integration, cluster_name, group_label, raw_entity_id, groups, spec_group)
            except _DATA_ERRORS as err:
                result.errors.append(PopulateError(raw_entity_id, err))
                continue

            entity.add_attributes(clusterName=cluster_name, displayName=entity.name, **extra_attributes)

            guesser = spec_group.ms_type_guesser or ms_type_guesser
            metric_set = entity.new_metric_set(guesser(group_label))
            if _populate_metric_set(metric_set, group_label, raw_entity_id, groups, spec_group.specs, result.errors):
                result.populated = True

    if result.populated:
        try:
            populate_cluster(integration, cluster_name, k8s_version)
        except ValueError as err:
            result.errors.append(err)

    return result


def _entity_for(
    integration: Integration,
    cluster_name: str,
    group_label: str,
    raw_entity_id: str,
    groups: RawGroups,
    spec_group: SpecGroup,
) -> Entity:
    entity_id = raw_entity_id
    if spec_group.id_generator is not None:
        try:
            entity_id = spec_group.id_generator(group_label, raw_entity_id, groups)
        except _DATA_ERRORS as err:
            msg = f"error generating entity ID for {raw_entity_id}: {err}"
            raise ValueError(msg) from err

    entity_type = ""
    if spec_group.type_generator is not None:
        try:
            entity_type = spec_group.type_generator(group_label, raw_entity_id, groups, cluster_name)
        except _DATA_ERRORS as err:
            msg = f"error generating entity type for {raw_entity_id}: {err}"
            raise ValueError(msg) from err

    return integration.entity(entity_id, entity_type)


def _populate_metric_set(
    metric_set: MetricSet,
    group_label: str,
    raw_entity_id: str,
    groups: RawGroups,
    specs: list[MetricSpec],
    errors: list[Exception],
) -> bool:
    populated = False
    for spec in specs:
        try:
            value = spec.value_func(group_label, raw_entity_id, groups)
        except _DATA_ERRORS as err:
            if not spec.optional:
                errors.append(PopulateError(raw_entity_id, f"cannot fetch value: {err}", metric=spec.name))
            continue

        if value is None:
            continue

        values = value if isinstance(value, FetchedValues) else {spec.name: value}
        for name, metric_value in values.items():
            try:
                metric_set.set_metric(name, metric_value, spec.source_type)
            except ValueError as err:
                if not spec.optional:
                    errors.append(PopulateError(raw_entity_id, f"cannot set metric: {err}", metric=name))
                continue
            populated = True

    return populated


def populate_cluster(integration: Integration, cluster_name: str, k8s_version: str) -> Entity:
    """Add the cluster entity carrying the cluster name and server version."""
    entity = integration.entity(cluster_name, CLUSTER_ENTITY_TYPE)
    metric_set = next((ms for ms in entity.metric_sets if ms.event_type == "K8sClusterSample"), None)
    if metric_set is None:
        metric_set = entity.new_metric_set("K8sClusterSample")
    metric_set.set_metric("clusterName", cluster_name, SourceType.ATTRIBUTE)
    metric_set.set_metric("clusterK8sVersion", k8s_version, SourceType.ATTRIBUTE)

    entity.set_inventory_item("cluster", "name", cluster_name)
    entity.set_inventory_item("cluster", "k8sVersion", k8s_version)
    entity.set_inventory_item("cluster", "integrationName", integration.name)
    entity.set_inventory_item("cluster", "integrationVersion", integration.version)
    return entity
