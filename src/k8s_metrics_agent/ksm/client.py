"""kube-state-metrics clients and the discoverers that find them."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import dns.exception
import dns.resolver
import structlog
from kubernetes.client import V1Pod
from pydantic import BaseModel

from k8s_metrics_agent.clients.http import HTTP_SCHEME, HTTPS_SCHEME, EndpointClient
from k8s_metrics_agent.clients.kubernetes import API_ERRORS, KubernetesClient, api_error_reason
from k8s_metrics_agent.errors import DiscoveryError, NoPodsFoundError

log = structlog.get_logger()

KSM_APP_LABEL_NAMES = ("app.kubernetes.io/name", "k8s-app", "app")
KSM_APP_LABEL_VALUE = "kube-state-metrics"
KSM_PORT_NAME = "http-metrics"
KSM_QUALIFIED_NAME = "kube-state-metrics.kube-system.svc.cluster.local"
KSM_DNS_SERVICE = "http-metrics"
KSM_DNS_PROTO = "tcp"
HEADLESS_SERVICE_CLUSTER_IP = "None"
DEFAULT_DISTRIBUTED_PORT = 8080
CACHE_KEY = "ksm-client"


@dataclass(frozen=True)
class SRVRecord:
    target: str
    port: int


LookupSRV = Callable[[str, str, str], list[SRVRecord]]


def lookup_srv(service: str, proto: str, name: str) -> list[SRVRecord]:
    """Resolve ``_service._proto.name`` SRV records."""
    answer = dns.resolver.resolve(f"_{service}._{proto}.{name}", "SRV")
    return [SRVRecord(target=r.target.to_text(omit_final_dot=True), port=int(r.port)) for r in answer]


class KSMClient(EndpointClient):
    """Client for one kube-state-metrics endpoint.

    Requests carry the service account token and skip TLS verification.
    """

    def __init__(self, base_url: str, node_ip: str, *, timeout: float, bearer_token: str | None = None) -> None:
        super().__init__(base_url, node_ip, timeout=timeout, bearer_token=bearer_token or None, verify=False)


def greatest_host_ip_pod(pods: list[V1Pod]) -> V1Pod | None:
    """Pick the pod with the greatest HostIP, ignoring pods without one.

    Always the same pod for the same candidates, whatever their order.
    """
    chosen: V1Pod | None = None
    for pod in pods:
        host_ip = _host_ip(pod)
        if not host_ip:
            continue
        if chosen is None or host_ip > _host_ip(chosen):
            chosen = pod
    return chosen


def _host_ip(pod: V1Pod) -> str:
    return (pod.status.host_ip if pod.status else "") or ""


def _pod_ip(pod: V1Pod) -> str:
    return (pod.status.pod_ip if pod.status else "") or ""


class KSMDiscoverer:
    """Finds kube-state-metrics by static URL, DNS SRV record or Service labels, in that order.

    A static URL is used as given, scheme and path included, so an https KSM endpoint can be
    configured directly. Discovered endpoints are always plain http.
    """

    def __init__(
        self,
        k8s: KubernetesClient,
        *,
        static_url: str = "",
        lookup: LookupSRV = lookup_srv,
        logger: Any = None,
    ) -> None:
        self._k8s = k8s
        self._static_url = static_url
        self._lookup = lookup
        self._log = logger or log

    def discover(self, timeout: float) -> KSMClient:
        if self._static_url:
            self._log.debug("ksm_static_endpoint", url=self._static_url)
            parts = urlsplit(self._static_url)
            if not parts.scheme or not parts.netloc:
                msg = f"wrong user-provided KSM endpoint: {self._static_url!r}"
                raise DiscoveryError(msg)
            base_url = self._static_url
        else:
            try:
                host = self._dns_discover()
            except DiscoveryError as dns_err:
                self._log.debug("ksm_dns_discovery_failed", error=str(dns_err))
                try:
                    host = self._api_discover()
                except DiscoveryError as err:
                    msg = f"failed to discover kube-state-metrics endpoint, got error: {err}"
                    raise DiscoveryError(msg) from err
            base_url = f"{HTTP_SCHEME}://{host}"

        try:
            node_ip = self._node_ip()
        except DiscoveryError as err:
            msg = f"failed to discover nodeIP with kube-state-metrics, got error: {err}"
            raise DiscoveryError(msg) from err

        self._log.debug("ksm_discovered", endpoint=base_url, node_ip=node_ip)
        return KSMClient(base_url, node_ip, timeout=timeout, bearer_token=self._k8s.config().bearer_token)

    def _dns_discover(self) -> str:
        try:
            records = self._lookup(KSM_DNS_SERVICE, KSM_DNS_PROTO, KSM_QUALIFIED_NAME)
        except (dns.exception.DNSException, OSError) as err:
            msg = f"can't get DNS port for {KSM_QUALIFIED_NAME}: {err}"
            raise DiscoveryError(msg) from err

        for record in records:
            if record.target == HEADLESS_SERVICE_CLUSTER_IP:
                continue
            return f"{KSM_QUALIFIED_NAME}:{record.port}"

        msg = f"can't get DNS port for {KSM_QUALIFIED_NAME}"
        raise DiscoveryError(msg)

    def _api_discover(self) -> str:
        services = _first_labelled(self._k8s.find_services_by_label, "services")
        for service in services:
            cluster_ip = service.spec.cluster_ip if service.spec else None
            ports = (service.spec.ports if service.spec else None) or []
            if not cluster_ip or cluster_ip == HEADLESS_SERVICE_CLUSTER_IP or not ports:
                continue
            for port in ports:
                if port.name == KSM_PORT_NAME:
                    return f"{cluster_ip}:{port.port}"
            for port in ports:
                if port.protocol == "TCP":
                    return f"{cluster_ip}:{port.port}"

        msg = "could not guess the kube-state-metrics host/port"
        raise DiscoveryError(msg)

    def _node_ip(self) -> str:
        pods = _first_labelled(self._k8s.find_pods_by_label, "pods")
        pod = greatest_host_ip_pod(pods)
        if pod is None:
            msg = "no HostIP address found for KSM node"
            raise DiscoveryError(msg)
        return _host_ip(pod)


def _first_labelled(find: Callable[[str, str], list[Any]], kind: str) -> list[Any]:
    """Return the objects matching the first well-known KSM label that matches anything."""
    last_error: Exception | None = None
    for label in KSM_APP_LABEL_NAMES:
        try:
            found = find(label, KSM_APP_LABEL_VALUE)
        except API_ERRORS as err:
            last_error = err
            continue
        if found:
            return found

    if last_error is not None:
        msg = f"querying API server for {kind}: {api_error_reason(last_error)}"
        raise DiscoveryError(msg) from last_error
    msg = f"no {kind} found by any of labels {list(KSM_APP_LABEL_NAMES)} with value {KSM_APP_LABEL_VALUE}"
    error_type = NoPodsFoundError if kind == "pods" else DiscoveryError
    raise error_type(msg)


def _validate_scheme(scheme: str) -> None:
    if scheme not in (HTTP_SCHEME, HTTPS_SCHEME):
        msg = f"unsupported KSM scheme, expected 'http' or 'https', got {scheme!r}"
        raise ValueError(msg)


class PodLabelDiscoverer:
    """Finds the kube-state-metrics pod labelled ``<label>=true``."""

    def __init__(
        self,
        k8s: KubernetesClient,
        pod_label: str,
        pod_port: int,
        *,
        scheme: str = HTTP_SCHEME,
        namespace: str = "",
        logger: Any = None,
    ) -> None:
        if not pod_label:
            msg = "KSM pod label can't be empty"
            raise ValueError(msg)
        if not pod_port:
            msg = "KSM pod port can't be zero"
            raise ValueError(msg)
        _validate_scheme(scheme)
        self._k8s = k8s
        self.pod_label = pod_label
        self.pod_port = pod_port
        self.scheme = scheme
        self.namespace = namespace
        self._log = logger or log

    def _find_pods(self) -> list[V1Pod]:
        try:
            pods = self._k8s.find_pods_by_label(self.pod_label, "true", namespace=self.namespace or None)
        except API_ERRORS as err:
            msg = f"querying API server for pods: {api_error_reason(err)}"
            raise DiscoveryError(msg) from err
        if not pods:
            msg = f"no KSM pods found with label {self.pod_label!r} in namespace {self.namespace!r}"
            raise NoPodsFoundError(msg)
        return pods

    def discover(self, timeout: float) -> KSMClient:
        pod = greatest_host_ip_pod(self._find_pods())
        if pod is None:
            msg = f"no KSM pod with a HostIP found with label {self.pod_label!r}"
            raise NoPodsFoundError(msg)

        base_url = f"{self.scheme}://{_pod_ip(pod)}:{self.pod_port}"
        self._log.debug("ksm_pod_discovered", endpoint=base_url, node_ip=_host_ip(pod))
        return KSMClient(base_url, _host_ip(pod), timeout=timeout, bearer_token=self._k8s.config().bearer_token)


class DistributedPodLabelDiscoverer(PodLabelDiscoverer):
    """Returns one client per labelled kube-state-metrics pod running on this node."""

    def __init__(
        self,
        k8s: KubernetesClient,
        pod_label: str,
        own_node_ip: str,
        *,
        pod_port: int = DEFAULT_DISTRIBUTED_PORT,
        scheme: str = HTTP_SCHEME,
        namespace: str = "",
        logger: Any = None,
    ) -> None:
        super().__init__(
            k8s, pod_label, pod_port or DEFAULT_DISTRIBUTED_PORT, scheme=scheme, namespace=namespace, logger=logger
        )
        self.own_node_ip = own_node_ip

    def discover(self, timeout: float) -> list[KSMClient]:  # type: ignore[override]
        bearer_token = self._k8s.config().bearer_token
        clients = []
        for pod in self._find_pods():
            if not _host_ip(pod) or _host_ip(pod) != self.own_node_ip:
                continue
            self._log.debug("ksm_pod_on_node", pod_ip=_pod_ip(pod))
            base_url = f"{self.scheme}://{_pod_ip(pod)}:{self.pod_port}"
            clients.append(KSMClient(base_url, _host_ip(pod), timeout=timeout, bearer_token=bearer_token))
        return clients


class KSMSnapshot(BaseModel):
    """Cached form of a KSM client."""

    base_url: str
    node_ip: str


class KSMCacheStrategy:
    """Converts KSM clients to and from their cached snapshot.

    The bearer token is not cached; it's resolved again on every compose.
    """

    snapshot_type = KSMSnapshot

    def __init__(self, bearer_token: Callable[[], str] | None = None) -> None:
        self._bearer_token = bearer_token

    def decompose(self, client: KSMClient) -> KSMSnapshot:
        return KSMSnapshot(base_url=client.base_url, node_ip=client.node_ip)

    def compose(self, snapshot: KSMSnapshot, timeout: float) -> KSMClient:
        token = self._bearer_token() if self._bearer_token else None
        return KSMClient(snapshot.base_url, snapshot.node_ip, timeout=timeout, bearer_token=token)
