"""Raw fetchers for the Kubelet ``/stats/summary`` and ``/pods`` endpoints.

Both endpoints return JSON; the payloads are read as plain dicts with the Kubelet's camelCase
keys. Pod raw IDs are ``namespace_pod``, containers and volumes append their own name.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

import requests
import structlog
from kubernetes.utils.quantity import parse_quantity

from k8s_metrics_agent.clients import HTTPClient
from k8s_metrics_agent.definition.fetch import RawGroups, RawMetrics
from k8s_metrics_agent.errors import FetchError

log = structlog.get_logger()

STATS_SUMMARY_PATH = "/stats/summary"
PODS_PATH = "/pods"

_NODE_STATS = {
    "cpu": {"usageNanoCores": "usageNanoCores", "usageCoreNanoSeconds": "usageCoreNanoSeconds"},
    "memory": {
        "usageBytes": "memoryUsageBytes",
        "availableBytes": "memoryAvailableBytes",
        "workingSetBytes": "memoryWorkingSetBytes",
        "rssBytes": "memoryRssBytes",
        "pageFaults": "memoryPageFaults",
        "majorPageFaults": "memoryMajorPageFaults",
    },
}
_FS_STATS = {
    "availableBytes": "AvailableBytes",
    "capacityBytes": "CapacityBytes",
    "usedBytes": "UsedBytes",
    "inodesFree": "InodesFree",
    "inodes": "Inodes",
    "inodesUsed": "InodesUsed",
}
_CONTAINER_STATS = {
    "cpu": {"usageNanoCores": "usageNanoCores"},
    "memory": {"usageBytes": "usageBytes", "workingSetBytes": "workingSetBytes"},
}

_WORKLOAD_NAME_KEYS = {
    "DaemonSet": "daemonsetName",
    "Deployment": "deploymentName",
    "Job": "jobName",
    "ReplicaSet": "replicasetName",
    "StatefulSet": "statefulsetName",
}


def get_metrics_data(client: HTTPClient) -> dict[str, Any]:
    """Fetch and decode the Kubelet stats summary.

    Raises:
        FetchError: If the request fails, doesn't return 200 or the body isn't JSON.
    """
    try:
        response = client.get(STATS_SUMMARY_PATH)
    except requests.RequestException as err:
        msg = f"performing GET request to kubelet endpoint {STATS_SUMMARY_PATH!r}: {err}"
        raise FetchError(msg) from err

    if response.status_code != 200:
        msg = f"received non-OK response code from kubelet: {response.status_code}: {response.text[:1024]}"
        raise FetchError(msg)

    try:
        summary = response.json()
    except ValueError as err:
        msg = f"unmarshaling the response body into kubelet stats summary: {err}"
        raise FetchError(msg) from err
    if not isinstance(summary, dict):
        msg = "kubelet stats summary is not a JSON object"
        raise FetchError(msg)
    return summary


def _copy_stats(dest: RawMetrics, source: dict[str, Any] | None, names: dict[str, str], prefix: str = "") -> None:
    if not source:
        return
    for key, name in names.items():
        value = source.get(key)
        if value is not None:
            dest[prefix + name if prefix else name] = value


def _network_stats(dest: RawMetrics, network: dict[str, Any] | None) -> None:
    if network is None:
        return
    _copy_stats(dest, network, {"rxBytes": "rxBytes", "txBytes": "txBytes"})
    if network.get("rxErrors") is not None and network.get("txErrors") is not None:
        dest["errors"] = network["rxErrors"] + network["txErrors"]

    interfaces: dict[str, RawMetrics] = {}
    for interface in network.get("interfaces") or []:
        metrics: RawMetrics = {}
        _copy_stats(metrics, interface, {"rxBytes": "rxBytes", "txBytes": "txBytes"})
        if interface.get("rxErrors") is not None and interface.get("txErrors") is not None:
            metrics["errors"] = interface["rxErrors"] + interface["txErrors"]
        interfaces[interface.get("name", "")] = metrics
    dest["interfaces"] = interfaces


def _node_stats(node: dict[str, Any]) -> RawMetrics:
    node_name = node.get("nodeName", "")
    if not node_name:
        msg = f"empty node identifier, possible data error in {STATS_SUMMARY_PATH} response"
        raise FetchError(msg)

    raw: RawMetrics = {"nodeName": node_name}
    for section, names in _NODE_STATS.items():
        _copy_stats(raw, node.get(section), names)
    _network_stats(raw, node.get("network"))
    _copy_stats(raw, node.get("fs"), _FS_STATS, prefix="fs")
    _copy_stats(raw, (node.get("runtime") or {}).get("imageFs"), _FS_STATS, prefix="runtime")
    return raw


def _pod_stats(pod: dict[str, Any]) -> RawMetrics:
    ref = pod.get("podRef") or {}
    if not ref.get("name") or not ref.get("namespace"):
        msg = f"empty pod identifier, possible data error in {STATS_SUMMARY_PATH} response"
        raise FetchError(msg)

    raw: RawMetrics = {"podName": ref["name"], "namespace": ref["namespace"]}
    _network_stats(raw, pod.get("network"))
    return raw


def _container_stats(container: dict[str, Any]) -> RawMetrics:
    if not container.get("name"):
        msg = f"empty container identifier, possible data error in {STATS_SUMMARY_PATH} response"
        raise FetchError(msg)

    raw: RawMetrics = {"containerName": container["name"]}
    for section, names in _CONTAINER_STATS.items():
        _copy_stats(raw, container.get(section), names)
    _copy_stats(raw, container.get("rootfs"), _FS_STATS, prefix="fs")
    return raw


def _volume_stats(volume: dict[str, Any]) -> RawMetrics:
    if not volume.get("name"):
        msg = f"empty volume identifier, possible data error in {STATS_SUMMARY_PATH} response"
        raise FetchError(msg)

    raw: RawMetrics = {"volumeName": volume["name"]}
    pvc = volume.get("pvcRef")
    if pvc:
        raw["pvcName"] = pvc.get("name", "")
        raw["pvcNamespace"] = pvc.get("namespace", "")
    # Volume fs stats are inlined in the volume object.
    _copy_stats(raw, volume, _FS_STATS, prefix="fs")
    return raw


def group_stats_summary(summary: dict[str, Any] | None) -> tuple[RawGroups, list[Exception]]:
    """Group a stats summary into ``node``, ``pod``, ``container`` and ``volume`` groups.

    Bad entries are reported in the returned error list and skipped; everything else is kept.
    """
    if summary is None:
        return {}, [FetchError("got nil stats summary")]

    errors: list[Exception] = []
    groups: RawGroups = {"pod": {}, "container": {}, "volume": {}, "node": {}}

    try:
        node = _node_stats(summary.get("node") or {})
    except FetchError as err:
        errors.append(err)
    else:
        groups["node"][node["nodeName"]] = node

    pods = summary.get("pods")
    if pods is None:
        errors.append(FetchError(f"pods data not found, possible data error in {STATS_SUMMARY_PATH} response"))
        return groups, errors

    for pod in pods:
        try:
            pod_raw = _pod_stats(pod)
        except FetchError as err:
            errors.append(err)
            continue
        pod_id = f"{pod_raw['namespace']}_{pod_raw['podName']}"
        groups["pod"][pod_id] = pod_raw

        for volume in pod.get("volume") or []:
            try:
                volume_raw = _volume_stats(volume)
            except FetchError as err:
                errors.append(err)
                continue
            volume_raw["podName"] = pod_raw["podName"]
            volume_raw["namespace"] = pod_raw["namespace"]
            groups["volume"][f"{pod_id}_{volume_raw['volumeName']}"] = volume_raw

        for container in pod.get("containers") or []:
            try:
                container_raw = _container_stats(container)
            except FetchError as err:
                errors.append(err)
                continue
            container_raw["podName"] = pod_raw["podName"]
            container_raw["namespace"] = pod_raw["namespace"]
            groups["container"][f"{pod_id}_{container_raw['containerName']}"] = container_raw

    return groups, errors


def parse_time(value: str | None) -> datetime | None:
    """Parse a Kubernetes RFC 3339 timestamp into an aware UTC datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value).astimezone(UTC)


def milli_value(quantity: str | int | float) -> int:
    """Resource quantity in thousandths, rounded up (``"250m"`` is 250, ``"1"`` is 1000)."""
    return math.ceil(parse_quantity(quantity) * 1000)


def quantity_value(quantity: str | int | float) -> int:
    """Resource quantity as an integer, rounded up (``"64Mi"`` is 67108864)."""
    return math.ceil(parse_quantity(quantity))


class PodsFetcher:
    """Builds the ``pod`` and ``container`` groups from the Kubelet ``/pods`` endpoint."""

    def __init__(self, client: HTTPClient, logger: Any = None) -> None:
        self._client = client
        self._log = logger or log

    def __call__(self) -> RawGroups:
        return self.do_pods_fetch()

    def do_pods_fetch(self) -> RawGroups:
        """Fetch the node's pod list.

        Raises:
            FetchError: If the pod list can't be fetched or decoded.
        """
        self._log.debug("kubelet_pods_fetch")
        try:
            response = self._client.get(PODS_PATH)
        except requests.RequestException as err:
            msg = f"error calling kubelet {PODS_PATH} path: {err}"
            raise FetchError(msg) from err

        if response.status_code != 200:
            msg = f"error calling kubelet {PODS_PATH} path. Status code {response.status_code}"
            raise FetchError(msg)
        if not response.content:
            msg = f"error reading response from kubelet {PODS_PATH} path. Response is empty"
            raise FetchError(msg)
        try:
            pod_list = response.json()
        except ValueError as err:
            msg = f"error decoding response from kubelet {PODS_PATH} path. {err}"
            raise FetchError(msg) from err
        if not isinstance(pod_list, dict):
            msg = f"error decoding response from kubelet {PODS_PATH} path. Expected a PodList object"
            raise FetchError(msg)

        return self.fill_gaps(pod_list.get("items") or [])

    def fill_gaps(self, pods: list[dict[str, Any]]) -> RawGroups:
        """Group pods and their containers, giving every entity the node IP of the first pod that has one."""
        groups: RawGroups = {"pod": {}, "container": {}}
        node_ip = ""

        for pod in pods:
            pod_raw = self.pod_data(pod)
            groups["pod"][_pod_id(pod)] = pod_raw
            node_ip = node_ip or pod_raw.get("nodeIP", "")
            for container_id, container_raw in container_data(pod).items():
                groups["container"][container_id] = container_raw
                node_ip = node_ip or container_raw.get("nodeIP", "")

        if node_ip:
            for group in groups.values():
                for raw in group.values():
                    raw["nodeIP"] = node_ip
        return groups

    def pod_data(self, pod: dict[str, Any]) -> RawMetrics:
        metadata = pod.get("metadata") or {}
        spec = pod.get("spec") or {}
        status = pod.get("status") or {}

        raw: RawMetrics = {
            "namespace": metadata.get("namespace", ""),
            "podName": metadata.get("name", ""),
            "nodeName": spec.get("nodeName", ""),
        }
        self._fill_pod_status(raw, status)

        if status.get("hostIP"):
            raw["nodeIP"] = status["hostIP"]
        if status.get("podIP"):
            raw["podIP"] = status["podIP"]
        if start_time := parse_time(status.get("startTime")):
            raw["startTime"] = start_time
        if created_at := parse_time(metadata.get("creationTimestamp")):
            raw["createdAt"] = created_at

        owners = metadata.get("ownerReferences") or []
        if owners:
            raw["createdKind"] = owners[0].get("kind", "")
            raw["createdBy"] = owners[0].get("name", "")
            _add_workload_name(raw, raw["createdKind"], raw["createdBy"])

        if status.get("reason"):
            raw["reason"] = status["reason"]
        if status.get("message"):
            raw["message"] = status["message"]
        if spec.get("priority") is not None:
            raw["priority"] = spec["priority"]
        if spec.get("priorityClassName"):
            raw["priorityClassName"] = spec["priorityClassName"]
        if metadata.get("labels"):
            raw["labels"] = dict(metadata["labels"])
        return raw

    def _fill_pod_status(self, raw: RawMetrics, status: dict[str, Any]) -> None:
        conditions = status.get("conditions") or []
        # Static pods report Pending with only PodScheduled=True while they are actually running.
        if (
            status.get("phase") == "Pending"
            and len(conditions) == 1
            and conditions[0].get("type") == "PodScheduled"
            and conditions[0].get("status") == "True"
        ):
            raw.update(status="Running", isReady="True", isScheduled="True")
            self._log.debug("fake_pending_pod_marked_running")
            return

        for condition in conditions:
            condition_type = condition.get("type")
            condition_status = condition.get("status", "")
            transition = parse_time(condition.get("lastTransitionTime")) if condition_status == "True" else None
            if condition_type == "Initialized" and transition:
                raw["initializedAt"] = transition
            elif condition_type == "Ready":
                raw["isReady"] = condition_status
                if transition:
                    raw["readyAt"] = transition
            elif condition_type == "ContainersReady" and transition:
                raw["containersReadyAt"] = transition
            elif condition_type == "PodScheduled":
                raw["isScheduled"] = condition_status
                if transition:
                    raw["scheduledAt"] = transition

        raw["status"] = status.get("phase", "")


def _pod_id(pod: dict[str, Any]) -> str:
    metadata = pod.get("metadata") or {}
    return f"{metadata.get('namespace', '')}_{metadata.get('name', '')}"


def _add_workload_name(raw: RawMetrics, kind: str, name: str) -> None:
    key = _WORKLOAD_NAME_KEYS.get(kind)
    if key is None:
        return
    raw[key] = name
    if kind == "ReplicaSet" and "-" in name:
        raw["deploymentName"] = name.rsplit("-", 1)[0]


def _sidecar_init_containers(spec: dict[str, Any]) -> list[dict[str, Any]]:
    return [c for c in spec.get("initContainers") or [] if c.get("restartPolicy") == "Always"]


def container_data(pod: dict[str, Any]) -> dict[str, RawMetrics]:
    """Raw metrics of every regular and sidecar container of ``pod`` keyed by ``namespace_pod_container``."""
    metadata = pod.get("metadata") or {}
    spec = pod.get("spec") or {}
    status = pod.get("status") or {}
    statuses = _container_statuses(pod)

    containers: dict[str, RawMetrics] = {}
    for container in [*(spec.get("containers") or []), *_sidecar_init_containers(spec)]:
        name = container.get("name", "")
        container_id = f"{_pod_id(pod)}_{name}"
        raw: RawMetrics = {
            "containerName": name,
            "containerImage": container.get("image", ""),
            "namespace": metadata.get("namespace", ""),
            "podName": metadata.get("name", ""),
            "nodeName": spec.get("nodeName", ""),
        }
        if status.get("hostIP"):
            raw["nodeIP"] = status["hostIP"]

        resources = container.get("resources") or {}
        requests_ = resources.get("requests") or {}
        limits = resources.get("limits") or {}
        if "cpu" in requests_:
            raw["cpuRequestedCores"] = milli_value(requests_["cpu"])
        if "cpu" in limits:
            raw["cpuLimitCores"] = milli_value(limits["cpu"])
        if "memory" in requests_:
            raw["memoryRequestedBytes"] = quantity_value(requests_["memory"])
        if "memory" in limits:
            raw["memoryLimitBytes"] = quantity_value(limits["memory"])

        owners = metadata.get("ownerReferences") or []
        if owners:
            _add_workload_name(raw, owners[0].get("kind", ""), owners[0].get("name", ""))

        raw.update(statuses.get(container_id, {}))
        if metadata.get("labels"):
            raw["labels"] = dict(metadata["labels"])
        containers[container_id] = raw
    return containers


def _container_statuses(pod: dict[str, Any]) -> dict[str, RawMetrics]:
    spec = pod.get("spec") or {}
    status = pod.get("status") or {}
    container_statuses = list(status.get("containerStatuses") or [])
    sidecars = {c.get("name") for c in _sidecar_init_containers(spec)}
    container_statuses += [s for s in status.get("initContainerStatuses") or [] if s.get("name") in sidecars]

    result: dict[str, RawMetrics] = {}
    for container_status in container_statuses:
        last = (container_status.get("lastState") or {}).get("terminated") or {}
        last_terminated = {
            "lastTerminatedExitCode": last.get("exitCode", 0),
            "lastTerminatedExitReason": last.get("reason", "None") if last else "None",
            "lastTerminatedTimestamp": parse_time(last.get("finishedAt")),
        }
        restart_count = container_status.get("restartCount", 0)
        state = container_status.get("state") or {}

        raw: RawMetrics
        if "running" in state:
            raw = {"status": "Running", "restartCount": restart_count, "isReady": bool(container_status.get("ready"))}
            if started_at := parse_time(state["running"].get("startedAt")):
                raw["startedAt"] = started_at
        elif "waiting" in state:
            raw = {"status": "Waiting", "reason": state["waiting"].get("reason", ""), "restartCount": restart_count}
        elif "terminated" in state:
            terminated = state["terminated"]
            raw = {"status": "Terminated", "reason": terminated.get("reason", ""), "restartCount": restart_count}
        else:
            result[f"{_pod_id(pod)}_{container_status.get('name', '')}"] = {"status": "Unknown"}
            continue

        raw.update({k: v for k, v in last_terminated.items() if v is not None})
        result[f"{_pod_id(pod)}_{container_status.get('name', '')}"] = raw
    return result
