"""Kubelet client, the connector that finds a working connection to it and its cache strategy."""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from typing import Any

import requests
import structlog
from kubernetes.client import V1Node
from pydantic import BaseModel

from k8s_metrics_agent.clients.http import HTTP_SCHEME, HTTPS_SCHEME, EndpointClient
from k8s_metrics_agent.clients.kubernetes import API_ERRORS, KubernetesClient, api_error_reason
from k8s_metrics_agent.errors import DiscoveryError
from k8s_metrics_agent.retry import retry_with_budget

log = structlog.get_logger()

HEALTHZ_PATH = "/healthz"
CADVISOR_PATH = "/metrics/cadvisor"
API_PROXY_PATH = "/api/v1/nodes/{node_name}/proxy/"
DEFAULT_HTTP_KUBELET_PORT = 10255
DEFAULT_HTTPS_KUBELET_PORT = 10250
CACHE_KEY = "kubelet-client"


class KubeletClient(EndpointClient):
    """Client for the Kubelet of one node, reached directly or through the API server proxy.

    With ``cadvisor_port`` set, cAdvisor metrics are read from a standalone cAdvisor on the node
    instead of the Kubelet's ``/metrics/cadvisor`` endpoint.
    """

    def __init__(
        self,
        base_url: str,
        node_ip: str,
        node_name: str,
        *,
        timeout: float,
        via_proxy: bool = False,
        session: requests.Session | None = None,
        bearer_token: str | None = None,
        verify: bool | str = True,
        cadvisor_port: int | None = None,
        logger: Any = None,
    ) -> None:
        super().__init__(
            base_url,
            node_ip,
            timeout=timeout,
            session=session,
            bearer_token=bearer_token,
            verify=verify,
            logger=logger,
        )
        self.node_name = node_name
        self.via_proxy = via_proxy
        self.cadvisor_port = cadvisor_port

    def do(self, method: str, path: str, headers: dict[str, str] | None = None) -> requests.Response:
        if self.cadvisor_port and path.rstrip("/") == CADVISOR_PATH:
            url = f"{HTTP_SCHEME}://{self.node_ip}:{self.cadvisor_port}/metrics"
            self._log.debug("http_request", method=method, url=url, standalone_cadvisor=True)
            return self.session.request(method, url, headers=headers, timeout=self.timeout)
        return super().do(method, path, headers=headers)

    def probe(self) -> None:
        """Check the Kubelet answers its health endpoint.

        Raises:
            requests.RequestException: If the request fails or doesn't return 200.
        """
        response = self.get(HEALTHZ_PATH)
        if response.status_code != 200:
            msg = f"kubelet health check at {self.url_for(HEALTHZ_PATH)} returned {response.status_code}"
            raise requests.HTTPError(msg, response=response)


def cadvisor_port_from_env() -> int | None:
    value = os.environ.get("CADVISOR_PORT", "")
    return int(value) if value else None


class KubeletConnector:
    """Finds a working connection to the Kubelet of ``node_name``.

    The Kubelet is tried directly on ``node_ip`` first, with the configured scheme or the one
    the port implies, or both schemes for non-standard ports. Otherwise the API server proxy
    is used. With an ``init_timeout`` the whole attempt is retried within that budget.
    """

    def __init__(
        self,
        k8s: KubernetesClient,
        node_name: str,
        *,
        node_ip: str = "",
        port: int = 0,
        scheme: str = "",
        init_timeout: float = 0,
        init_backoff: float = 5,
        cadvisor_port: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        logger: Any = None,
    ) -> None:
        if not node_name:
            msg = "node name is required to connect to the kubelet"
            raise ValueError(msg)
        self._k8s = k8s
        self.node_name = node_name
        self.node_ip = node_ip
        self.port = port
        self.scheme = scheme
        self.init_timeout = init_timeout
        self.init_backoff = init_backoff
        self.cadvisor_port = cadvisor_port
        self._clock = clock
        self._sleep = sleep
        self._log = logger or log
        self._node: V1Node | None = None

    def discover(self, timeout: float) -> KubeletClient:
        return retry_with_budget(
            lambda: self.connect(timeout),
            self.init_timeout,
            self.init_backoff,
            retry_on=(DiscoveryError,),
            target="kubelet",
            clock=self._clock,
            sleep=self._sleep,
            logger=self._log,
        )

    def connect(self, timeout: float) -> KubeletClient:
        """Try every connection method once."""
        port = self._port()
        node_ip = self._node_ip()
        host = f"{node_ip}:{port}"

        for scheme in self._schemes_for(port):
            client = self.local_client(f"{scheme}://{host}", node_ip, timeout)
            try:
                client.probe()
            except requests.RequestException as err:
                self._log.debug("kubelet_local_probe_failed", scheme=scheme, host=host, error=str(err))
                continue
            self._log.info("kubelet_connected", scheme=scheme, host=host)
            return client

        self._log.info("kubelet_unreachable_locally", host=host, node=self.node_name)
        client = self.proxy_client(node_ip, timeout)
        try:
            client.probe()
        except requests.RequestException as err:
            msg = f"checking connection via API proxy: {err}"
            raise DiscoveryError(msg) from err
        self._log.info("kubelet_connected_through_proxy", url=client.base_url)
        return client

    def local_client(self, base_url: str, node_ip: str, timeout: float) -> KubeletClient:
        """Build a direct client; the service account token is only sent over https."""
        bearer_token = self._k8s.config().bearer_token if base_url.startswith(f"{HTTPS_SCHEME}:") else None
        return KubeletClient(
            base_url,
            node_ip,
            self.node_name,
            timeout=timeout,
            bearer_token=bearer_token,
            verify=False,
            cadvisor_port=self.cadvisor_port,
            logger=self._log,
        )

    def proxy_client(self, node_ip: str, timeout: float) -> KubeletClient:
        """Build a client going through the API server's node proxy, authenticated like the API client."""
        api_config = self._k8s.config()
        base_url = api_config.host.rstrip("/") + API_PROXY_PATH.format(node_name=self.node_name)
        return KubeletClient(
            base_url,
            node_ip,
            self.node_name,
            timeout=timeout,
            via_proxy=True,
            session=self._k8s.secure_session(),
            verify=api_config.verify,
            cadvisor_port=self.cadvisor_port,
            logger=self._log,
        )

    def _node_object(self) -> V1Node:
        if self._node is None:
            try:
                self._node = self._k8s.find_node(self.node_name)
            except API_ERRORS as err:
                msg = f"getting node {self.node_name!r}: {api_error_reason(err)}"
                raise DiscoveryError(msg) from err
        return self._node

    def _port(self) -> int:
        if self.port:
            self._log.debug("kubelet_port_from_config", port=self.port)
            return self.port
        node = self._node_object()
        try:
            port = int(node.status.daemon_endpoints.kubelet_endpoint.port)
        except (AttributeError, TypeError) as err:
            msg = f"node {self.node_name!r} does not report a kubelet port"
            raise DiscoveryError(msg) from err
        self._log.debug("kubelet_port_from_node_status", port=port)
        return port

    def _node_ip(self) -> str:
        if self.node_ip:
            return self.node_ip
        node = self._node_object()
        for address in (node.status.addresses if node.status else None) or []:
            if address.type == "InternalIP" and address.address:
                self.node_ip = address.address
                return self.node_ip
        msg = f"node {self.node_name!r} has no InternalIP address"
        raise DiscoveryError(msg)

    def _schemes_for(self, port: int) -> list[str]:
        if self.scheme:
            return [self.scheme]
        if port == DEFAULT_HTTP_KUBELET_PORT:
            return [HTTP_SCHEME]
        if port == DEFAULT_HTTPS_KUBELET_PORT:
            return [HTTPS_SCHEME]
        self._log.info("kubelet_scheme_unknown", port=port, hint="set kubelet.scheme in the config file")
        return [HTTP_SCHEME, HTTPS_SCHEME]


class KubeletSnapshot(BaseModel):
    """Cached form of a Kubelet client. Credentials are never cached."""

    base_url: str
    node_ip: str
    node_name: str
    via_proxy: bool = False


class KubeletCacheStrategy:
    snapshot_type = KubeletSnapshot

    def __init__(self, connector: KubeletConnector) -> None:
        self._connector = connector

    def decompose(self, client: KubeletClient) -> KubeletSnapshot:
        return KubeletSnapshot(
            base_url=client.base_url, node_ip=client.node_ip, node_name=client.node_name, via_proxy=client.via_proxy
        )

    def compose(self, snapshot: KubeletSnapshot, timeout: float) -> KubeletClient:
        if snapshot.via_proxy:
            return self._connector.proxy_client(snapshot.node_ip, timeout)
        return self._connector.local_client(snapshot.base_url, snapshot.node_ip, timeout)
