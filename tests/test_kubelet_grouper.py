"""Tests for the Kubelet grouper: fetcher merge order, node record and error recovery."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
from helpers import mock_response
from kubernetes.client import V1Node, V1NodeCondition, V1NodeSpec, V1NodeStatus, V1NodeSystemInfo, V1ObjectMeta
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError

from k8s_metrics_agent.errors import FetchError, GroupError
from k8s_metrics_agent.kubelet.grouper import KubeletGrouper, count_running_pods, node_conditions, requested_resources
from k8s_metrics_agent.kubelet.specs import KUBELET_SPECS


def _node_info() -> V1NodeSystemInfo:
    return V1NodeSystemInfo(
        architecture="amd64",
        boot_id="b",
        container_runtime_version="containerd://1.7",
        kernel_version="6.1",
        kube_proxy_version="v1.29.2",
        kubelet_version="v1.29.2",
        machine_id="m",
        operating_system="linux",
        os_image="Ubuntu",
        system_uuid="u",
    )


def _make_node(conditions: list[V1NodeCondition] | None = None) -> V1Node:
    return V1Node(
        metadata=V1ObjectMeta(name="node-1", labels={"kubernetes.io/os": "linux"}),
        spec=V1NodeSpec(unschedulable=True),
        status=V1NodeStatus(
            allocatable={"cpu": "3920m", "memory": "14Gi", "pods": "110"},
            capacity={"cpu": "4", "memory": "16Gi", "pods": "110"},
            conditions=conditions or [V1NodeCondition(type="Ready", status="True")],
            node_info=_node_info(),
        ),
    )


def _summary(pods: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    summary: dict[str, Any] = {"node": {"nodeName": "node-1", "cpu": {"usageNanoCores": 500000000}}}
    if pods is not None:
        summary["pods"] = pods
    return summary


def _summary_pod(name: str, rx_bytes: int = 1) -> dict[str, Any]:
    return {"podRef": {"name": name, "namespace": "default"}, "network": {"rxBytes": rx_bytes, "txBytes": 2}}


def _grouper(summary: dict[str, Any], fetchers: list[Any] | None = None, node: V1Node | None = None) -> KubeletGrouper:
    client = MagicMock()
    client.get.return_value = mock_response(json_body=summary)
    node_getter = MagicMock(return_value=node or _make_node())
    return KubeletGrouper(client, node_getter, fetchers=fetchers or [])


class TestNodeConditions:
    def test_values(self) -> None:
        node = _make_node(
            [
                V1NodeCondition(type="Ready", status="True"),
                V1NodeCondition(type="MemoryPressure", status="False"),
                V1NodeCondition(type="DiskPressure", status="Unknown"),
                V1NodeCondition(type="PIDPressure", status="Bogus"),
            ]
        )

        assert node_conditions(node) == {"Ready": 1, "MemoryPressure": 0, "DiskPressure": -1}

    def test_conflicting_duplicates_are_unknown(self) -> None:
        node = _make_node([V1NodeCondition(type="Ready", status="True"), V1NodeCondition(type="Ready", status="False")])

        assert node_conditions(node) == {"Ready": -1}


class TestAggregates:
    def test_count_running_pods(self) -> None:
        groups = {"pod": {"a": {"status": "Running"}, "b": {"status": "Pending"}, "c": {}}}

        assert count_running_pods(groups) == 1
        assert count_running_pods({}) == 0

    def test_requested_resources(self) -> None:
        groups = {
            "container": {
                "a": {"cpuRequestedCores": 250, "memoryRequestedBytes": 100},
                "b": {"cpuRequestedCores": 500},
                "c": {},
            }
        }

        assert requested_resources(groups) == (750, 100)


class TestKubeletGrouper:
    def test_node_record_is_merged_into_summary_node(self) -> None:
        groups = _grouper(_summary(pods=[])).group(KUBELET_SPECS)

        node = groups["node"]["node-1"]
        assert node["usageNanoCores"] == 500000000
        assert node["labels"] == {"kubernetes.io/os": "linux"}
        assert node["allocatable"]["cpu"] == "3920m"
        assert node["conditions"] == {"Ready": 1}
        assert node["unschedulable"] is True
        assert node["kubeletVersion"] == "v1.29.2"
        assert node["runningPods"] == 0

    def test_fetchers_win_over_summary(self) -> None:
        fetched = {
            "pod": {"default_web": {"podName": "web", "namespace": "default", "status": "Running", "rxBytes": 99}},
            "container": {"default_web_app": {"containerName": "app", "cpuRequestedCores": 250}},
        }
        summary = _summary(pods=[_summary_pod("web", rx_bytes=1), _summary_pod("only-in-summary")])

        groups = _grouper(summary, fetchers=[lambda: fetched]).group(KUBELET_SPECS)

        assert groups["pod"]["default_web"]["rxBytes"] == 99
        assert groups["pod"]["default_web"]["txBytes"] == 2
        assert "default_only-in-summary" not in groups["pod"]
        assert groups["node"]["node-1"]["runningPods"] == 1
        assert groups["node"]["node-1"]["cpuRequestedCores"] == 250

    def test_recoverable_fetcher_error_keeps_partial_data(self) -> None:
        partial = {"pod": {"default_web": {"podName": "web", "namespace": "default"}}}

        def fetcher() -> Any:
            raise GroupError([FetchError("one pod failed")], recoverable=True, groups=partial)

        groups = _grouper(_summary(pods=[]), fetchers=[fetcher]).group(KUBELET_SPECS)

        assert "default_web" in groups["pod"]

    def test_fetcher_failure_aborts(self) -> None:
        fetcher = MagicMock(side_effect=FetchError("error calling kubelet /pods path"))

        with pytest.raises(GroupError) as exc_info:
            _grouper(_summary(pods=[]), fetchers=[fetcher]).group(KUBELET_SPECS)

        assert not exc_info.value.recoverable
        assert "error querying Kubelet" in str(exc_info.value)

    def test_summary_failure_aborts(self) -> None:
        client = MagicMock()
        client.get.return_value = mock_response(status_code=500, text="boom")

        with pytest.raises(GroupError) as exc_info:
            KubeletGrouper(client, MagicMock()).group(KUBELET_SPECS)

        assert not exc_info.value.recoverable

    def test_summary_errors_are_recoverable(self) -> None:
        with pytest.raises(GroupError) as exc_info:
            _grouper(_summary(pods=None)).group(KUBELET_SPECS)

        err = exc_info.value
        assert err.recoverable
        assert "pods data not found" in str(err)
        assert err.groups["node"]["node-1"]["kubeletVersion"] == "v1.29.2"

    def test_api_server_failure_aborts(self) -> None:
        client = MagicMock()
        client.get.return_value = mock_response(json_body=_summary(pods=[]))
        node_getter = MagicMock(side_effect=ApiException(status=403, reason="Forbidden"))

        with pytest.raises(GroupError, match="error querying ApiServer: Forbidden") as exc_info:
            KubeletGrouper(client, node_getter).group(KUBELET_SPECS)

        assert not exc_info.value.recoverable
        node_getter.assert_called_once_with("node-1")

    def test_unreachable_api_server_aborts(self) -> None:
        client = MagicMock()
        client.get.return_value = mock_response(json_body=_summary(pods=[]))
        node_getter = MagicMock(side_effect=MaxRetryError(None, "/api/v1/nodes/node-1", "connection refused"))

        with pytest.raises(GroupError, match="error querying ApiServer: .*Max retries exceeded") as exc_info:
            KubeletGrouper(client, node_getter).group(KUBELET_SPECS)

        assert not exc_info.value.recoverable
