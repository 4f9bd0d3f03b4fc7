"""Kubernetes API wrapper exposing the lookups discovery needs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests
import structlog
import urllib3
from kubernetes import client as k8s_client
from kubernetes.client.exceptions import ApiException
from kubernetes.config import ConfigException, load_incluster_config, new_client_from_config

log = structlog.get_logger()

# Raised by API calls: error responses, and connection failures below the HTTP layer.
API_ERRORS: tuple[type[Exception], ...] = (ApiException, urllib3.exceptions.HTTPError)


def api_error_reason(err: Exception) -> str:
    if isinstance(err, ApiException):
        return str(err.reason)
    return str(err)


@dataclass(frozen=True)
class APIConfig:
    """Connection details of the API server, used to build proxy clients."""

    host: str
    bearer_token: str
    verify: bool | str = True


def load_k8s_api_client(try_local_kubeconfig: bool = True, context: str | None = None) -> k8s_client.ApiClient:
    """Create an isolated API client from the in-cluster service account.

    Falls back to the local kubeconfig when not running inside a pod and
    ``try_local_kubeconfig`` is set.
    """
    configuration = k8s_client.Configuration()
    try:
        load_incluster_config(client_configuration=configuration)
    except ConfigException:
        if not try_local_kubeconfig:
            raise
        log.debug("incluster_config_unavailable", fallback="kubeconfig")
        return new_client_from_config(context=context)
    return k8s_client.ApiClient(configuration)


def _bearer_from(configuration: Any) -> str:
    token = (configuration.api_key or {}).get("authorization", "") or ""
    prefix, _, rest = token.partition(" ")
    if rest and prefix.lower() == "bearer":
        return rest
    return token


class KubernetesClient:
    """Wrapper around the Core V1 and Version APIs."""

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self._api_client = api_client
        self._core = k8s_client.CoreV1Api(api_client)
        self._version = k8s_client.VersionApi(api_client)

    @classmethod
    def from_environment(cls, try_local_kubeconfig: bool = True) -> KubernetesClient:
        return cls(load_k8s_api_client(try_local_kubeconfig=try_local_kubeconfig))

    def find_node(self, name: str) -> k8s_client.V1Node:
        try:
            return self._core.read_node(name)
        except Exception:
            log.error("failed_to_get_node", node=name)
            raise

    def find_pods_by_label(self, label: str, value: str, namespace: str | None = None) -> list[k8s_client.V1Pod]:
        selector = f"{label}={value}"
        if namespace:
            pods = self._core.list_namespaced_pod(namespace, label_selector=selector)
        else:
            pods = self._core.list_pod_for_all_namespaces(label_selector=selector)
        return list(pods.items or [])

    def find_services_by_label(
        self, label: str, value: str, namespace: str | None = None
    ) -> list[k8s_client.V1Service]:
        selector = f"{label}={value}"
        if namespace:
            services = self._core.list_namespaced_service(namespace, label_selector=selector)
        else:
            services = self._core.list_service_for_all_namespaces(label_selector=selector)
        return list(services.items or [])

    def server_version(self) -> str:
        return self._version.get_code().git_version

    def config(self) -> APIConfig:
        configuration = self._api_client.configuration
        verify: bool | str = bool(configuration.verify_ssl)
        if verify and configuration.ssl_ca_cert:
            verify = configuration.ssl_ca_cert
        return APIConfig(host=configuration.host, bearer_token=_bearer_from(configuration), verify=verify)

    def secure_session(self) -> requests.Session:
        """Return a session authenticated against the API server with its own TLS settings."""
        api_config = self.config()
        session = requests.Session()
        session.verify = api_config.verify
        if api_config.bearer_token:
            session.headers["Authorization"] = f"Bearer {api_config.bearer_token}"
        configuration = self._api_client.configuration
        if configuration.cert_file and configuration.key_file:
            session.cert = (configuration.cert_file, configuration.key_file)
        return session
