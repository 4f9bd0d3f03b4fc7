"""Groups kube-state-metrics series into raw groups."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import requests
import structlog

from k8s_metrics_agent.clients import HTTPClient
from k8s_metrics_agent.definition.fetch import RawGroups
from k8s_metrics_agent.definition.spec import SpecGroups
from k8s_metrics_agent.errors import AgentError, GroupError
from k8s_metrics_agent.prometheus import MetricFamily, Query, fetch_metric_families, group_metrics_by_spec

log = structlog.get_logger()


class KSMGrouper:
    """Queries every discovered kube-state-metrics endpoint and groups the series by spec.

    A failed query aborts the grouping; spec groups without data are reported as a
    recoverable error alongside whatever was grouped.
    """

    def __init__(self, clients: Sequence[HTTPClient], queries: Sequence[Query], logger: Any = None) -> None:
        if not clients:
            msg = "at least one KSM client is required"
            raise ValueError(msg)
        self._clients = list(clients)
        self._queries = list(queries)
        self._log = logger or log

    def group(self, specs: SpecGroups) -> RawGroups:
        families: list[MetricFamily] = []
        for client in self._clients:
            try:
                families.extend(fetch_metric_families(client, self._queries))
            except (requests.RequestException, AgentError, ValueError) as err:
                self._log.warning("ksm_query_failed", node_ip=client.node_ip, error=str(err))
                raise GroupError([err]) from err

        groups, errors = group_metrics_by_spec(specs, families)
        if errors:
            raise GroupError(errors, recoverable=True, groups=groups)
        return groups
