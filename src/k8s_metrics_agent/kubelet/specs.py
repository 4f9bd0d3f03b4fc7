"""Metric specs for the node, pod, container and volume entities built from Kubelet data."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from kubernetes.utils.quantity import parse_quantity

from k8s_metrics_agent.definition.fetch import (
    FetchedValues,
    FetchFunc,
    RawGroups,
    compute_percentage,
    from_nano,
    from_raw,
    to_cores,
    to_numeric_boolean,
    to_timestamp,
    to_utilization,
    transform,
)
from k8s_metrics_agent.definition.generators import (
    from_raw_entity_id_group_entity_id_generator,
    from_raw_groups_entity_id_generator,
    from_raw_groups_entity_type_generator,
    namespace_from_metrics,
)
from k8s_metrics_agent.definition.spec import MetricSpec, SourceType, SpecGroup, SpecGroups
from k8s_metrics_agent.errors import FetchError

GAUGE = SourceType.GAUGE
RATE = SourceType.RATE
DELTA = SourceType.DELTA
ATTRIBUTE = SourceType.ATTRIBUTE

# Resource name to metric suffix and whether the quantity is reported in cores.
_RESOURCES = {
    "cpu": ("CpuCores", True),
    "memory": ("MemoryBytes", False),
    "pods": ("Pods", False),
    "ephemeral-storage": ("EphemeralStorageBytes", False),
}


def one_metric_per_label(labels: Any) -> FetchedValues:
    if not isinstance(labels, dict):
        raise FetchError("error converting labels to metrics")
    return FetchedValues({f"label.{k}": v for k, v in labels.items()})


def prefix_from_map(prefix: str) -> Callable[[Any], FetchedValues]:
    def to_metrics(values: Any) -> FetchedValues:
        if not isinstance(values, dict):
            raise FetchError(f"error converting map to {prefix}* metrics")
        return FetchedValues({f"{prefix}{k}": v for k, v in values.items()})

    return to_metrics


def one_metric_per_resource(prefix: str) -> Callable[[Any], FetchedValues]:
    """``{"cpu": "3500m"}`` becomes ``{"<prefix>CpuCores": 3.5}``; unknown resources are dropped."""

    def to_metrics(resources: Any) -> FetchedValues:
        if not isinstance(resources, dict):
            raise FetchError(f"error converting {prefix} resources to metrics")
        values = FetchedValues()
        for resource, quantity in resources.items():
            if resource not in _RESOURCES:
                continue
            suffix, as_cores = _RESOURCES[resource]
            parsed = parse_quantity(quantity)
            values[f"{prefix}{suffix}"] = float(parsed) if as_cores else int(parsed)
        return values

    return to_metrics


def from_resource(key: str, resource: str) -> FetchFunc:
    """One resource of the quantity map stored under ``key``, as a number."""
    fetch_map = from_raw(key)

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        resources = fetch_map(group_label, entity_id, groups)
        if resource not in resources:
            raise FetchError(f"{resource} not found in {key}")
        return float(parse_quantity(resources[resource]))

    return fetch


def to_complement_percentage(used_key: str, available_key: str) -> FetchFunc:
    """``used / (used + available)`` as a percentage."""
    used = from_raw(used_key)
    available = from_raw(available_key)

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        used_value = used(group_label, entity_id, groups)
        available_value = available(group_label, entity_id, groups)
        return compute_percentage(used_value, used_value + available_value)

    return fetch


def is_persistent_volume(group_label: str, entity_id: str, groups: RawGroups) -> str:
    pvc_name = groups.get(group_label, {}).get(entity_id, {}).get("pvcName")
    return "true" if pvc_name else "false"


def _timestamp(key: str) -> FetchFunc:
    return transform(from_raw(key), to_timestamp)


_cpu_used_cores = transform(from_raw("usageNanoCores"), from_nano)
_cpu_requested_cores = transform(from_raw("cpuRequestedCores"), to_cores)
_cpu_limit_cores = transform(from_raw("cpuLimitCores"), to_cores)
_labels = transform(from_raw("labels"), one_metric_per_label)
_allocatable = transform(from_raw("allocatable"), one_metric_per_resource("allocatable"))
_capacity = transform(from_raw("capacity"), one_metric_per_resource("capacity"))


def _optional_attributes(*keys: str) -> list[MetricSpec]:
    return [MetricSpec(key, from_raw(key), ATTRIBUTE, optional=True) for key in keys]


_WORKLOAD_NAMES = ("deploymentName", "daemonsetName", "jobName", "replicasetName", "statefulsetName")

_FS_SPECS = [
    MetricSpec("fsAvailableBytes", from_raw("fsAvailableBytes"), GAUGE),
    MetricSpec("fsCapacityBytes", from_raw("fsCapacityBytes"), GAUGE),
    MetricSpec("fsUsedBytes", from_raw("fsUsedBytes"), GAUGE),
    MetricSpec("fsInodesFree", from_raw("fsInodesFree"), GAUGE),
    MetricSpec("fsInodes", from_raw("fsInodes"), GAUGE),
    MetricSpec("fsInodesUsed", from_raw("fsInodesUsed"), GAUGE),
]

KUBELET_SPECS: SpecGroups = {
    "pod": SpecGroup(
        id_generator=from_raw_entity_id_group_entity_id_generator("namespace"),
        type_generator=from_raw_groups_entity_type_generator,
        namespace_getter=namespace_from_metrics,
        specs=[
            MetricSpec("net.rxBytesPerSecond", from_raw("rxBytes"), RATE, optional=True),
            MetricSpec("net.txBytesPerSecond", from_raw("txBytes"), RATE, optional=True),
            MetricSpec("net.errorsPerSecond", from_raw("errors"), RATE, optional=True),
            MetricSpec("createdAt", _timestamp("createdAt"), GAUGE, optional=True),
            MetricSpec("scheduledAt", _timestamp("scheduledAt"), GAUGE, optional=True),
            MetricSpec("initializedAt", _timestamp("initializedAt"), GAUGE, optional=True),
            MetricSpec("containersReadyAt", _timestamp("containersReadyAt"), GAUGE, optional=True),
            MetricSpec("readyAt", _timestamp("readyAt"), GAUGE, optional=True),
            MetricSpec("startTime", _timestamp("startTime"), GAUGE),
            MetricSpec("nodeIP", from_raw("nodeIP"), ATTRIBUTE),
            MetricSpec("namespace", from_raw("namespace"), ATTRIBUTE),
            MetricSpec("namespaceName", from_raw("namespace"), ATTRIBUTE),
            MetricSpec("nodeName", from_raw("nodeName"), ATTRIBUTE),
            MetricSpec("podName", from_raw("podName"), ATTRIBUTE),
            MetricSpec("isReady", transform(from_raw("isReady"), to_numeric_boolean), GAUGE),
            MetricSpec("status", from_raw("status"), ATTRIBUTE),
            MetricSpec("isScheduled", transform(from_raw("isScheduled"), to_numeric_boolean), GAUGE),
            MetricSpec("priority", from_raw("priority"), GAUGE, optional=True),
            MetricSpec("label.*", _labels, ATTRIBUTE, optional=True),
            *_optional_attributes(
                "createdKind", "createdBy", "podIP", *_WORKLOAD_NAMES, "priorityClassName", "reason", "message"
            ),
        ],
    ),
    "container": SpecGroup(
        id_generator=from_raw_groups_entity_id_generator("containerName"),
        type_generator=from_raw_groups_entity_type_generator,
        namespace_getter=namespace_from_metrics,
        specs=[
            MetricSpec("memoryUsedBytes", from_raw("usageBytes"), GAUGE),
            MetricSpec("memoryWorkingSetBytes", from_raw("workingSetBytes"), GAUGE),
            MetricSpec("cpuUsedCores", _cpu_used_cores, GAUGE),
            *_FS_SPECS,
            MetricSpec("fsUsedPercent", to_complement_percentage("fsUsedBytes", "fsAvailableBytes"), GAUGE),
            MetricSpec("containerName", from_raw("containerName"), ATTRIBUTE),
            MetricSpec("containerImage", from_raw("containerImage"), ATTRIBUTE),
            MetricSpec("namespace", from_raw("namespace"), ATTRIBUTE),
            MetricSpec("namespaceName", from_raw("namespace"), ATTRIBUTE),
            MetricSpec("podName", from_raw("podName"), ATTRIBUTE),
            MetricSpec("nodeName", from_raw("nodeName"), ATTRIBUTE),
            MetricSpec("nodeIP", from_raw("nodeIP"), ATTRIBUTE),
            MetricSpec("restartCount", from_raw("restartCount"), GAUGE),
            MetricSpec("restartCountDelta", from_raw("restartCount"), DELTA),
            MetricSpec("cpuRequestedCores", _cpu_requested_cores, GAUGE, optional=True),
            MetricSpec("cpuLimitCores", _cpu_limit_cores, GAUGE, optional=True),
            MetricSpec("memoryRequestedBytes", from_raw("memoryRequestedBytes"), GAUGE, optional=True),
            MetricSpec("memoryLimitBytes", from_raw("memoryLimitBytes"), GAUGE, optional=True),
            MetricSpec("status", from_raw("status"), ATTRIBUTE),
            MetricSpec("isReady", transform(from_raw("isReady"), to_numeric_boolean), GAUGE, optional=True),
            MetricSpec("lastTerminatedExitCode", from_raw("lastTerminatedExitCode"), GAUGE, optional=True),
            MetricSpec("lastTerminatedTimestamp", _timestamp("lastTerminatedTimestamp"), GAUGE, optional=True),
            MetricSpec("label.*", _labels, ATTRIBUTE, optional=True),
            MetricSpec("cpuCoresUtilization", to_utilization(_cpu_used_cores, _cpu_limit_cores), GAUGE, optional=True),
            MetricSpec(
                "requestedCpuCoresUtilization",
                to_utilization(_cpu_used_cores, _cpu_requested_cores),
                GAUGE,
                optional=True,
            ),
            MetricSpec(
                "memoryUtilization",
                to_utilization(from_raw("usageBytes"), from_raw("memoryLimitBytes")),
                GAUGE,
                optional=True,
            ),
            *_optional_attributes(*_WORKLOAD_NAMES, "reason", "lastTerminatedExitReason"),
        ],
    ),
    "node": SpecGroup(
        type_generator=from_raw_groups_entity_type_generator,
        specs=[
            MetricSpec("nodeName", from_raw("nodeName"), ATTRIBUTE),
            MetricSpec("cpuUsedCores", _cpu_used_cores, GAUGE),
            MetricSpec("memoryUsedBytes", from_raw("memoryUsageBytes"), GAUGE),
            MetricSpec("memoryAvailableBytes", from_raw("memoryAvailableBytes"), GAUGE),
            MetricSpec("memoryWorkingSetBytes", from_raw("memoryWorkingSetBytes"), GAUGE),
            MetricSpec("memoryRssBytes", from_raw("memoryRssBytes"), GAUGE, optional=True),
            MetricSpec("memoryPageFaults", from_raw("memoryPageFaults"), GAUGE, optional=True),
            MetricSpec("memoryMajorPageFaultsPerSecond", from_raw("memoryMajorPageFaults"), RATE, optional=True),
            MetricSpec("net.rxBytesPerSecond", from_raw("rxBytes"), RATE, optional=True),
            MetricSpec("net.txBytesPerSecond", from_raw("txBytes"), RATE, optional=True),
            MetricSpec("net.errorsPerSecond", from_raw("errors"), RATE, optional=True),
            *_FS_SPECS,
            MetricSpec("runtimeAvailableBytes", from_raw("runtimeAvailableBytes"), GAUGE, optional=True),
            MetricSpec("runtimeCapacityBytes", from_raw("runtimeCapacityBytes"), GAUGE, optional=True),
            MetricSpec("runtimeUsedBytes", from_raw("runtimeUsedBytes"), GAUGE, optional=True),
            MetricSpec("label.*", _labels, ATTRIBUTE, optional=True),
            MetricSpec("allocatable.*", _allocatable, GAUGE),
            MetricSpec("capacity.*", _capacity, GAUGE),
            MetricSpec("condition.*", transform(from_raw("conditions"), prefix_from_map("condition.")), GAUGE),
            MetricSpec("unschedulable", transform(from_raw("unschedulable"), to_numeric_boolean), GAUGE),
            MetricSpec("memoryRequestedBytes", from_raw("memoryRequestedBytes"), GAUGE),
            MetricSpec("cpuRequestedCores", _cpu_requested_cores, GAUGE),
            MetricSpec("kubeletVersion", from_raw("kubeletVersion"), ATTRIBUTE),
            MetricSpec("runningPods", from_raw("runningPods"), GAUGE),
            MetricSpec(
                "fsCapacityUtilization",
                to_utilization(from_raw("fsUsedBytes"), from_raw("fsCapacityBytes")),
                GAUGE,
                optional=True,
            ),
            MetricSpec(
                "allocatableCpuCoresUtilization",
                to_utilization(_cpu_used_cores, from_resource("allocatable", "cpu")),
                GAUGE,
                optional=True,
            ),
            MetricSpec(
                "allocatableMemoryUtilization",
                to_utilization(from_raw("memoryWorkingSetBytes"), from_resource("allocatable", "memory")),
                GAUGE,
                optional=True,
            ),
        ],
    ),
    "volume": SpecGroup(
        type_generator=from_raw_groups_entity_type_generator,
        namespace_getter=namespace_from_metrics,
        specs=[
            MetricSpec("volumeName", from_raw("volumeName"), ATTRIBUTE),
            MetricSpec("podName", from_raw("podName"), ATTRIBUTE),
            MetricSpec("namespace", from_raw("namespace"), ATTRIBUTE),
            MetricSpec("namespaceName", from_raw("namespace"), ATTRIBUTE),
            MetricSpec("persistent", is_persistent_volume, ATTRIBUTE),
            MetricSpec("pvcName", from_raw("pvcName"), ATTRIBUTE, optional=True),
            MetricSpec("pvcNamespace", from_raw("pvcNamespace"), ATTRIBUTE, optional=True),
            *_FS_SPECS,
            MetricSpec("fsUsedPercent", to_complement_percentage("fsUsedBytes", "fsAvailableBytes"), GAUGE),
        ],
    ),
}
