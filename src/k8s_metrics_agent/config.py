"""Agent configuration loaded from YAML with environment variable overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_VALID_SCHEMES = {"", "http", "https"}


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


@dataclass(frozen=True)
class KubeletConfig:
    """How to reach the Kubelet on this node."""

    enabled: bool = True
    port: int = 0
    scheme: str = ""
    timeout: float = 10.0
    init_timeout: float = field(default_factory=lambda: _env_float("KUBELET_INIT_TIMEOUT", 180))
    init_backoff: float = field(default_factory=lambda: _env_float("KUBELET_INIT_BACKOFF", 5))
    cache_ttl: float = 3600.0


@dataclass(frozen=True)
class KSMConfig:
    """How to discover kube-state-metrics.

    ``static_url`` skips discovery altogether. ``pod_label`` switches to pod-label discovery,
    which also needs ``pod_port``; with ``distributed`` every labelled pod on this node is scraped.
    """

    enabled: bool = True
    static_url: str = ""
    pod_label: str = ""
    pod_port: int = 0
    scheme: str = "http"
    namespace: str = ""
    distributed: bool = False
    timeout: float = 10.0
    cache_ttl: float = 3600.0
    cache_ttl_jitter: int = 50


@dataclass(frozen=True)
class AgentConfig:
    """Top-level agent configuration."""

    cluster_name: str
    node_name: str = field(default_factory=lambda: os.environ.get("NODE_NAME", ""))
    node_ip: str = field(default_factory=lambda: os.environ.get("NODE_IP", ""))
    interval: float = 15.0
    verbose: bool = field(default_factory=lambda: os.environ.get("VERBOSE", "").lower() in {"1", "true", "yes"})
    storage_path: str = "/var/cache/k8s-metrics-agent"
    sink_url: str = field(default_factory=lambda: os.environ.get("SINK_URL", "http://localhost:8001/v1/data"))
    sink_timeout: float = 15.0
    namespace_allowlist: tuple[str, ...] = ()
    kubelet: KubeletConfig = field(default_factory=KubeletConfig)
    ksm: KSMConfig = field(default_factory=KSMConfig)


def _build(cls: type, raw: dict[str, Any], section: str) -> Any:
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(raw) - known)
    if unknown:
        msg = f"Unknown keys in '{section}' section: {', '.join(unknown)}."
        raise ValueError(msg)
    return cls(**raw)


def parse_config(raw: dict[str, Any]) -> AgentConfig:
    """Build an AgentConfig from a parsed YAML mapping.

    Raises:
        ValueError: If the mapping has unknown keys or inconsistent values.
    """
    raw = dict(raw)
    kubelet = _build(KubeletConfig, raw.pop("kubelet", None) or {}, "kubelet")
    ksm = _build(KSMConfig, raw.pop("ksm", None) or {}, "ksm")
    if "namespace_allowlist" in raw:
        raw["namespace_allowlist"] = tuple(raw["namespace_allowlist"] or ())
    if not raw.get("cluster_name"):
        raw["cluster_name"] = os.environ.get("CLUSTER_NAME", "")
    config = _build(AgentConfig, {**raw, "kubelet": kubelet, "ksm": ksm}, "root")
    validate_config(config)
    return config


def load_config(path: Path | None = None) -> AgentConfig:
    """Load configuration from ``path`` or ``K8S_METRICS_AGENT_CONFIG`` (default ``agent.yaml``).

    A missing file means defaults plus environment overrides.
    """
    path = path or Path(os.environ.get("K8S_METRICS_AGENT_CONFIG", "agent.yaml"))
    raw: Any = {}
    if path.exists():
        raw = yaml.safe_load(path.read_text()) or {}
    if not isinstance(raw, dict):
        msg = f"Config file {path} must contain a mapping, got {type(raw).__name__}."
        raise ValueError(msg)
    return parse_config(raw)


def validate_config(config: AgentConfig) -> None:
    """Reject configurations the agent can't run with."""
    errors: list[str] = []
    if not config.cluster_name:
        errors.append("cluster_name is required")
    if config.interval <= 0:
        errors.append("interval must be positive")
    if config.kubelet.scheme not in _VALID_SCHEMES:
        errors.append(f"kubelet.scheme must be http or https, got {config.kubelet.scheme!r}")
    if config.kubelet.init_timeout < 0 or config.kubelet.init_backoff < 0:
        errors.append("kubelet init_timeout and init_backoff can't be negative")
    if config.ksm.scheme not in {"http", "https"}:
        errors.append(f"ksm.scheme must be http or https, got {config.ksm.scheme!r}")
    if config.ksm.pod_label and not config.ksm.pod_port:
        errors.append("ksm.pod_port is required when ksm.pod_label is set")
    if config.ksm.distributed and not config.ksm.pod_label:
        errors.append("ksm.distributed requires ksm.pod_label")
    if config.ksm.distributed and not config.node_ip:
        errors.append("ksm.distributed requires node_ip (env NODE_IP)")
    if not 0 <= config.ksm.cache_ttl_jitter <= 100:
        errors.append("ksm.cache_ttl_jitter must be a percentage between 0 and 100")

    if errors:
        msg = f"Configuration errors: {'; '.join(errors)}."
        raise ValueError(msg)
