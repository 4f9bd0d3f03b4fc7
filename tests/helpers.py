"""Builders shared by test modules."""

from __future__ import annotations

from unittest.mock import MagicMock

from kubernetes.client import V1ObjectMeta, V1Pod, V1PodStatus, V1Service, V1ServicePort, V1ServiceSpec


class FakeClock:
    """Manual clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_pod(
    name: str = "kube-state-metrics-0",
    namespace: str = "kube-system",
    host_ip: str | None = "6.7.8.9",
    pod_ip: str | None = "10.1.2.3",
    labels: dict[str, str] | None = None,
) -> V1Pod:
    return V1Pod(
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels or {}),
        status=V1PodStatus(host_ip=host_ip, pod_ip=pod_ip),
    )


def make_service(
    cluster_ip: str = "11.22.33.44",
    ports: list[V1ServicePort] | None = None,
    name: str = "kube-state-metrics",
) -> V1Service:
    return V1Service(
        metadata=V1ObjectMeta(name=name, namespace="kube-system"),
        spec=V1ServiceSpec(cluster_ip=cluster_ip, ports=ports or [V1ServicePort(port=8080, protocol="TCP")]),
    )


def mock_response(status_code: int = 200, json_body: object = None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.content = text.encode() if text else b"{}"
    response.json.return_value = json_body
    return response
