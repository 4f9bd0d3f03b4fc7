"""Entity ID, entity type and metric set type generators over raw groups."""

from __future__ import annotations

from k8s_metrics_agent.definition.fetch import RawGroups, RawMetrics
from k8s_metrics_agent.definition.spec import EntityIDGenerator, MetricSetTypeGuesser
from k8s_metrics_agent.errors import FetchError


def from_raw_groups_entity_id_generator(key: str) -> EntityIDGenerator:
    """Use the string stored under ``key`` in the entity's raw metrics as its ID."""

    def generate(group_label: str, raw_entity_id: str, groups: RawGroups) -> str:
        value = groups.get(group_label, {}).get(raw_entity_id, {}).get(key)
        if value is None:
            raise FetchError(f"{key!r} not found for {group_label!r}")
        if not isinstance(value, str):
            raise FetchError(f"incorrect type of {key!r} for {group_label!r}")
        return value

    return generate


def from_raw_entity_id_group_entity_id_generator(key: str) -> EntityIDGenerator:
    """Strip the ``<value of key>_`` prefix from the composite raw entity ID.

    With ``key="namespace"`` the raw pod ID ``kube-system_coredns-1`` becomes ``coredns-1``.
    """

    def generate(group_label: str, raw_entity_id: str, groups: RawGroups) -> str:
        entity = groups.get(group_label, {}).get(raw_entity_id, {})
        if key not in entity:
            raise FetchError(f"{key!r} not found for {group_label!r}")
        prefix = f"{entity[key]}_"
        value = raw_entity_id[len(prefix) :] if raw_entity_id.startswith(prefix) else raw_entity_id
        if not value:
            raise FetchError("generated entity ID is empty")
        return value

    return generate


def from_raw_groups_entity_type_generator(
    group_label: str, raw_entity_id: str, groups: RawGroups, cluster_name: str
) -> str:
    """Entity type namespaced by cluster, and by namespace (and pod for containers) where it applies."""
    if group_label in ("namespace", "node"):
        return f"k8s:{cluster_name}:{group_label}"

    if group_label == "container":
        namespace, pod_name = _string_keys(group_label, raw_entity_id, groups, "namespace", "podName")
        if not namespace or not pod_name:
            raise FetchError(f"empty values for generated entity type for {group_label!r}")
        return f"k8s:{cluster_name}:{namespace}:{pod_name}:{group_label}"

    (namespace,) = _string_keys(group_label, raw_entity_id, groups, "namespace")
    if not namespace:
        raise FetchError(f"empty namespace for generated entity type for {group_label!r}")
    return f"k8s:{cluster_name}:{namespace}:{group_label}"


def namespace_from_metrics(metrics: RawMetrics) -> str:
    namespace = metrics.get("namespace")
    return namespace if isinstance(namespace, str) else ""


def metric_set_type_guesser(group_label: str) -> str:
    """``persistent-volume`` becomes ``K8sPersistentVolumeSample``."""
    return "K8s" + "".join(part.title() for part in group_label.split("-")) + "Sample"


def metric_set_type_guesser_with_custom_group(group: str) -> MetricSetTypeGuesser:
    def guess(_group_label: str) -> str:
        return metric_set_type_guesser(group)

    return guess


def _string_keys(group_label: str, raw_entity_id: str, groups: RawGroups, *keys: str) -> list[str]:
    if group_label not in groups:
        raise FetchError(f"{group_label!r} not found")
    entity = groups[group_label].get(raw_entity_id)
    if entity is None:
        raise FetchError(f"entity data {raw_entity_id!r} not found for {group_label!r}")

    values = []
    for key in keys:
        if key not in entity:
            raise FetchError(f"{key!r} not found for {group_label!r}")
        value = entity[key]
        if not isinstance(value, str):
            raise FetchError(f"incorrect type of {key!r} for {group_label!r}")
        values.append(value)
    return values
