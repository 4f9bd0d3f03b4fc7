"""Agent entry point: configure logging, wire the scrape jobs and run the scrape loop."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Any

import structlog
from kubernetes.config import ConfigException

from k8s_metrics_agent import __version__
from k8s_metrics_agent.clients.cache import DiscoveryCacher, MultiDiscoveryCacher
from k8s_metrics_agent.clients.kubernetes import API_ERRORS, KubernetesClient, api_error_reason
from k8s_metrics_agent.config import AgentConfig, load_config
from k8s_metrics_agent.errors import AgentError, SinkError
from k8s_metrics_agent.integration import Integration
from k8s_metrics_agent.ksm import client as ksm_client
from k8s_metrics_agent.ksm.grouper import KSMGrouper
from k8s_metrics_agent.ksm.specs import KSM_QUERIES, KSM_SPECS
from k8s_metrics_agent.kubelet import client as kubelet_client
from k8s_metrics_agent.kubelet.grouper import KubeletGrouper
from k8s_metrics_agent.kubelet.metric import PodsFetcher
from k8s_metrics_agent.kubelet.specs import KUBELET_SPECS
from k8s_metrics_agent.populator import NamespaceAllowList, NamespaceFilter
from k8s_metrics_agent.scrape import ScrapeJob
from k8s_metrics_agent.sink import HTTPSink
from k8s_metrics_agent.storage import JSONDiskStorage, Storage

log = structlog.get_logger()


def configure_logging(verbose: bool = False) -> None:
    """JSON logs to stderr, or human-readable ones when stderr is a terminal."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.INFO),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


class Agent:
    """Runs the KSM and Kubelet scrape jobs every ``interval`` and publishes the result.

    Endpoints are discovered at the start of every cycle through the discovery cache, so
    a cycle only talks to the API server when a cache entry is missing, stale or broken.
    """

    def __init__(self, config: AgentConfig, k8s: KubernetesClient, storage: Storage, sink: HTTPSink) -> None:
        self.config = config
        self._k8s = k8s
        self._sink = sink
        self._namespace_filter: NamespaceFilter | None = (
            NamespaceAllowList(config.namespace_allowlist) if config.namespace_allowlist else None
        )
        self._ksm_cacher = self._build_ksm_cacher(storage) if config.ksm.enabled else None
        self._kubelet_cacher = self._build_kubelet_cacher(storage) if config.kubelet.enabled else None

    def _bearer_token(self) -> str:
        return self._k8s.config().bearer_token

    def _build_ksm_cacher(self, storage: Storage) -> DiscoveryCacher[Any, Any] | MultiDiscoveryCacher[Any, Any]:
        ksm = self.config.ksm
        strategy = ksm_client.KSMCacheStrategy(self._bearer_token)
        cache_options: dict[str, Any] = {
            "storage": storage,
            "storage_key": ksm_client.CACHE_KEY,
            "ttl": ksm.cache_ttl,
            "ttl_jitter": ksm.cache_ttl_jitter,
        }
        if ksm.distributed:
            distributed = ksm_client.DistributedPodLabelDiscoverer(
                self._k8s,
                ksm.pod_label,
                self.config.node_ip,
                pod_port=ksm.pod_port,
                scheme=ksm.scheme,
                namespace=ksm.namespace,
            )
            return MultiDiscoveryCacher(distributed, strategy, **cache_options)

        discoverer: Any
        if ksm.pod_label:
            discoverer = ksm_client.PodLabelDiscoverer(
                self._k8s, ksm.pod_label, ksm.pod_port, scheme=ksm.scheme, namespace=ksm.namespace
            )
        else:
            discoverer = ksm_client.KSMDiscoverer(self._k8s, static_url=ksm.static_url)
        return DiscoveryCacher(discoverer, strategy, **cache_options)

    def _build_kubelet_cacher(self, storage: Storage) -> DiscoveryCacher[Any, Any]:
        kubelet = self.config.kubelet
        connector = kubelet_client.KubeletConnector(
            self._k8s,
            self.config.node_name,
            node_ip=self.config.node_ip,
            port=kubelet.port,
            scheme=kubelet.scheme,
            init_timeout=kubelet.init_timeout,
            init_backoff=kubelet.init_backoff,
            cadvisor_port=kubelet_client.cadvisor_port_from_env(),
        )
        return DiscoveryCacher(
            connector,
            kubelet_client.KubeletCacheStrategy(connector),
            storage=storage,
            storage_key=kubelet_client.CACHE_KEY,
            ttl=kubelet.cache_ttl,
        )

    def jobs(self) -> list[ScrapeJob]:
        """Discover the endpoints and build this cycle's jobs; a job that can't be built is skipped."""
        jobs = []
        if self._ksm_cacher is not None:
            try:
                discovered = self._ksm_cacher.discover(self.config.ksm.timeout)
                clients = discovered if isinstance(discovered, list) else [discovered]
                jobs.append(ScrapeJob("kube-state-metrics", KSMGrouper(clients, KSM_QUERIES), KSM_SPECS))
            except (AgentError, ValueError) as err:
                log.error("ksm_discovery_failed", error=str(err))

        if self._kubelet_cacher is not None:
            try:
                client = self._kubelet_cacher.discover(self.config.kubelet.timeout)
            except (AgentError, ValueError) as err:
                log.error("kubelet_discovery_failed", error=str(err))
            else:
                grouper = KubeletGrouper(client, self._k8s.find_node, fetchers=[PodsFetcher(client)])
                jobs.append(ScrapeJob("kubelet", grouper, KUBELET_SPECS))
        return jobs

    def run_cycle(self) -> bool:
        """Run every job once and publish; False when every job failed or publishing failed."""
        integration = Integration(version=__version__)
        try:
            k8s_version = self._k8s.server_version()
        except API_ERRORS as err:
            log.warning("server_version_failed", reason=api_error_reason(err))
            k8s_version = ""

        jobs = self.jobs()
        succeeded = 0
        for job in jobs:
            result = job.populate(
                integration, self.config.cluster_name, k8s_version, namespace_filter=self._namespace_filter
            )
            for err in result.errors:
                log.warning("scrape_error", job=job.name, error=str(err))
            if result.populated:
                succeeded += 1
            log.info("job_finished", job=job.name, populated=result.populated, errors=len(result.errors))

        if not succeeded:
            log.error("cycle_failed", jobs=len(jobs))
            return False

        try:
            self._sink.publish(integration)
        except SinkError as err:
            log.error("publish_failed", error=str(err))
            return False
        return True

    def run(self, stop: threading.Event) -> None:
        """Run cycles until ``stop`` is set; the event is only checked between cycles."""
        log.info("agent_started", version=__version__, cluster=self.config.cluster_name, node=self.config.node_name)
        while not stop.is_set():
            self.run_cycle()
            stop.wait(self.config.interval)
        log.info("agent_stopped")


def main() -> int:
    configure_logging()
    try:
        config = load_config()
    except (ValueError, OSError) as err:
        log.error("invalid_config", error=str(err))
        return 2
    configure_logging(config.verbose)

    if not config.node_name:
        log.error("node_name_missing", hint="set the NODE_NAME environment variable")
        return 1

    try:
        k8s = KubernetesClient.from_environment()
    except ConfigException as err:
        log.error("kubernetes_config_failed", error=str(err))
        return 1
    sink = HTTPSink(config.sink_url, timeout=config.sink_timeout)
    agent = Agent(config, k8s, JSONDiskStorage(config.storage_path), sink)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    try:
        agent.run(stop)
    except KeyboardInterrupt:
        log.info("agent_interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
