"""Tests for the agent's wiring, scrape cycle and entry point."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError

from k8s_metrics_agent.clients.cache import DiscoveryCacher, MultiDiscoveryCacher
from k8s_metrics_agent.config import AgentConfig, KSMConfig, KubeletConfig
from k8s_metrics_agent.errors import DiscoveryError, SinkError
from k8s_metrics_agent.ksm.client import DistributedPodLabelDiscoverer, KSMDiscoverer, PodLabelDiscoverer
from k8s_metrics_agent.main import Agent, main
from k8s_metrics_agent.populator import NamespaceAllowList, PopulateResult
from k8s_metrics_agent.storage import MemoryStorage


def _config(**overrides: object) -> AgentConfig:
    return AgentConfig(cluster_name="prod", node_name="node-1", node_ip="10.0.0.5", **overrides)


def _agent(mock_k8s: MagicMock, config: AgentConfig | None = None, sink: MagicMock | None = None) -> Agent:
    return Agent(config or _config(), mock_k8s, MemoryStorage(), sink or MagicMock())


def _job(name: str, populated: bool, errors: list[Exception] | None = None) -> MagicMock:
    job = MagicMock()
    job.name = name
    job.populate.return_value = PopulateResult(populated=populated, errors=errors or [])
    return job


class TestAgentWiring:
    def test_default_ksm_discovery(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s)

        assert isinstance(agent._ksm_cacher, DiscoveryCacher)
        assert isinstance(agent._ksm_cacher.discoverer, KSMDiscoverer)
        assert agent._ksm_cacher.ttl_jitter == 50

    def test_pod_label_discovery(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s, _config(ksm=KSMConfig(pod_label="my-ksm", pod_port=8080)))

        assert isinstance(agent._ksm_cacher.discoverer, PodLabelDiscoverer)

    def test_distributed_discovery(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s, _config(ksm=KSMConfig(pod_label="my-ksm", pod_port=8080, distributed=True)))

        assert isinstance(agent._ksm_cacher, MultiDiscoveryCacher)
        discoverer = agent._ksm_cacher.discoverer
        assert isinstance(discoverer, DistributedPodLabelDiscoverer)
        assert discoverer.own_node_ip == "10.0.0.5"

    def test_disabled_sources(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s, _config(ksm=KSMConfig(enabled=False)))

        assert agent._ksm_cacher is None
        assert agent._kubelet_cacher is not None


class TestJobs:
    def test_failed_discovery_skips_only_that_job(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s)
        agent._ksm_cacher = MagicMock()
        agent._ksm_cacher.discover.side_effect = DiscoveryError("no KSM")
        agent._kubelet_cacher = MagicMock()

        jobs = agent.jobs()

        assert [job.name for job in jobs] == ["kubelet"]

    def test_unreachable_api_server_skips_jobs(self, mock_k8s: MagicMock) -> None:
        refused = MaxRetryError(None, "/api/v1/pods", "connection refused")
        mock_k8s.find_services_by_label.side_effect = refused
        mock_k8s.find_pods_by_label.side_effect = refused
        mock_k8s.find_node.side_effect = refused
        config = _config(ksm=KSMConfig(static_url="http://ksm:8080"), kubelet=KubeletConfig(init_timeout=0))
        agent = _agent(mock_k8s, config)

        assert agent.jobs() == []

    def test_distributed_clients_share_one_job(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s)
        agent._ksm_cacher = MagicMock()
        agent._ksm_cacher.discover.return_value = [MagicMock(), MagicMock()]
        agent._kubelet_cacher = None

        jobs = agent.jobs()

        assert [job.name for job in jobs] == ["kube-state-metrics"]

    def test_no_distributed_clients_skips_job(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s)
        agent._ksm_cacher = MagicMock()
        agent._ksm_cacher.discover.return_value = []
        agent._kubelet_cacher = None

        assert agent.jobs() == []


class TestRunCycle:
    def test_publishes_when_a_job_populated(self, mock_k8s: MagicMock) -> None:
        mock_k8s.server_version.return_value = "v1.29.2"
        sink = MagicMock()
        agent = _agent(mock_k8s, _config(namespace_allowlist=("default",)), sink=sink)
        ok, failed = _job("kubelet", True), _job("kube-state-metrics", False, [DiscoveryError("x")])

        with patch.object(agent, "jobs", return_value=[failed, ok]):
            assert agent.run_cycle()

        sink.publish.assert_called_once()
        args, kwargs = ok.populate.call_args
        assert args[1:] == ("prod", "v1.29.2")
        assert isinstance(kwargs["namespace_filter"], NamespaceAllowList)

    def test_nothing_published_when_every_job_failed(self, mock_k8s: MagicMock) -> None:
        sink = MagicMock()
        agent = _agent(mock_k8s, sink=sink)

        with patch.object(agent, "jobs", return_value=[_job("kubelet", False)]):
            assert not agent.run_cycle()

        sink.publish.assert_not_called()

    def test_sink_failure(self, mock_k8s: MagicMock) -> None:
        sink = MagicMock()
        sink.publish.side_effect = SinkError("status 500")
        agent = _agent(mock_k8s, sink=sink)

        with patch.object(agent, "jobs", return_value=[_job("kubelet", True)]):
            assert not agent.run_cycle()

    def test_unknown_server_version(self, mock_k8s: MagicMock) -> None:
        mock_k8s.server_version.side_effect = ApiException(status=403, reason="Forbidden")
        agent = _agent(mock_k8s)
        job = _job("kubelet", True)

        with patch.object(agent, "jobs", return_value=[job]):
            agent.run_cycle()

        assert job.populate.call_args.args[2] == ""

    def test_unreachable_api_server_version(self, mock_k8s: MagicMock) -> None:
        mock_k8s.server_version.side_effect = MaxRetryError(None, "/version", "connection refused")
        agent = _agent(mock_k8s)
        job = _job("kubelet", True)

        with patch.object(agent, "jobs", return_value=[job]):
            assert agent.run_cycle()

        assert job.populate.call_args.args[2] == ""

    def test_cycle_fails_quietly_when_api_server_is_down(self, mock_k8s: MagicMock) -> None:
        refused = MaxRetryError(None, "/api/v1/nodes/node-1", "connection refused")
        mock_k8s.server_version.side_effect = refused
        mock_k8s.find_pods_by_label.side_effect = refused
        mock_k8s.find_node.side_effect = refused
        sink = MagicMock()
        config = _config(ksm=KSMConfig(static_url="http://ksm:8080"), kubelet=KubeletConfig(init_timeout=0))
        agent = _agent(mock_k8s, config, sink=sink)

        assert not agent.run_cycle()
        sink.publish.assert_not_called()

    def test_run_stops_between_cycles(self, mock_k8s: MagicMock) -> None:
        agent = _agent(mock_k8s)
        stop = threading.Event()

        with patch.object(agent, "run_cycle", side_effect=stop.set) as run_cycle:
            agent.run(stop)

        run_cycle.assert_called_once()


class TestMain:
    def test_invalid_config(self) -> None:
        with patch("k8s_metrics_agent.main.load_config", side_effect=ValueError("cluster_name is required")):
            assert main() == 2

    def test_missing_node_name(self) -> None:
        config = AgentConfig(cluster_name="prod", node_name="")

        with (
            patch("k8s_metrics_agent.main.load_config", return_value=config),
            patch("k8s_metrics_agent.main.KubernetesClient") as k8s_client,
        ):
            assert main() == 1

        k8s_client.from_environment.assert_not_called()
