"""Groups Kubelet data: the configured fetchers, the stats summary and the node record."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import structlog
from kubernetes.client import V1Node

from k8s_metrics_agent.clients import HTTPClient
from k8s_metrics_agent.clients.kubernetes import API_ERRORS, api_error_reason
from k8s_metrics_agent.definition.fetch import RawGroups, RawMetrics
from k8s_metrics_agent.definition.spec import SpecGroups
from k8s_metrics_agent.errors import AgentError, GroupError
from k8s_metrics_agent.grouper import FetchFunc, fill_groups_and_merge_non_existent
from k8s_metrics_agent.kubelet.metric import get_metrics_data, group_stats_summary

log = structlog.get_logger()

NodeGetter = Callable[[str], V1Node]

_CONDITION_VALUES = {"True": 1, "False": 0, "Unknown": -1}


def node_conditions(node: V1Node) -> dict[str, int]:
    """Condition type to 1/0/-1; a type reported twice with different values is -1."""
    conditions: dict[str, int] = {}
    for condition in (node.status.conditions if node.status else None) or []:
        value = _CONDITION_VALUES.get(condition.status)
        if value is None:
            continue
        if conditions.get(condition.type, value) != value:
            value = -1
        conditions[condition.type] = value
    return conditions


def count_running_pods(groups: RawGroups) -> int:
    return sum(1 for pod in groups.get("pod", {}).values() if pod.get("status") == "Running")


def requested_resources(groups: RawGroups) -> tuple[int, int]:
    """Sum of container CPU requests in millicores and memory requests in bytes."""
    cpu_millis = 0
    memory_bytes = 0
    for container in groups.get("container", {}).values():
        cpu_millis += container.get("cpuRequestedCores", 0)
        memory_bytes += container.get("memoryRequestedBytes", 0)
    return cpu_millis, memory_bytes


class KubeletGrouper:
    """Builds one RawGroups snapshot per cycle from the Kubelet of this node.

    Fetchers are merged in order, then the stats summary, then the node record; each merge only
    fills gaps. Stats summary entries that fail to parse make the result a recoverable error
    carrying everything else.
    """

    def __init__(
        self,
        client: HTTPClient,
        node_getter: NodeGetter,
        fetchers: Sequence[FetchFunc] = (),
        logger: Any = None,
    ) -> None:
        self._client = client
        self._node_getter = node_getter
        self._fetchers = list(fetchers)
        self._log = logger or log

    def group(self, specs: SpecGroups) -> RawGroups:
        groups: RawGroups = {}
        for fetch in self._fetchers:
            try:
                fetched = fetch()
            except GroupError as err:
                if not err.recoverable:
                    raise
                self._log.debug("kubelet_fetch_partial", error=str(err))
                fetched = err.groups
            except (AgentError, ValueError) as err:
                raise GroupError([AgentError(f"error querying Kubelet. {err}")]) from err
            fill_groups_and_merge_non_existent(groups, fetched)

        try:
            summary = get_metrics_data(self._client)
        except AgentError as err:
            raise GroupError([AgentError(f"error querying Kubelet. {err}")]) from err

        resources, summary_errors = group_stats_summary(summary)
        fill_groups_and_merge_non_existent(groups, resources)

        node_name = (summary.get("node") or {}).get("nodeName", "")
        if node_name:
            try:
                node = self._node_getter(node_name)
            except API_ERRORS as err:
                raise GroupError([AgentError(f"error querying ApiServer: {api_error_reason(err)}")]) from err
            fill_groups_and_merge_non_existent(groups, {"node": {node_name: self._node_record(node, groups)}})

        if summary_errors:
            raise GroupError(summary_errors, recoverable=True, groups=groups)
        return groups

    def _node_record(self, node: V1Node, groups: RawGroups) -> RawMetrics:
        cpu_millis, memory_bytes = requested_resources(groups)
        status = node.status
        return {
            "labels": dict(node.metadata.labels or {}) if node.metadata else {},
            "allocatable": dict(status.allocatable or {}) if status else {},
            "capacity": dict(status.capacity or {}) if status else {},
            "memoryRequestedBytes": memory_bytes,
            "cpuRequestedCores": cpu_millis,
            "conditions": node_conditions(node),
            "unschedulable": bool(node.spec.unschedulable) if node.spec else False,
            "kubeletVersion": status.node_info.kubelet_version if status and status.node_info else "",
            "runningPods": count_running_pods(groups),
        }
