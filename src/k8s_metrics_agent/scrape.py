"""A scrape job: group raw data with one grouper and populate it with one spec table."""

from __future__ import annotations

from typing import Any

import structlog

from k8s_metrics_agent.definition.spec import SpecGroups
from k8s_metrics_agent.errors import AgentError, GroupError
from k8s_metrics_agent.grouper import Grouper
from k8s_metrics_agent.integration import Integration
from k8s_metrics_agent.populator import NamespaceFilter, PopulateResult, populate

log = structlog.get_logger()


class ScrapeJob:
    def __init__(self, name: str, grouper: Grouper, specs: SpecGroups, logger: Any = None) -> None:
        self.name = name
        self.grouper = grouper
        self.specs = specs
        self._log = logger or log

    def populate(
        self,
        integration: Integration,
        cluster_name: str,
        k8s_version: str,
        namespace_filter: NamespaceFilter | None = None,
    ) -> PopulateResult:
        """Group and populate once.

        Non-recoverable grouping errors end the job with ``populated=False``; recoverable ones
        are logged and whatever was grouped is still populated.
        """
        try:
            groups = self.grouper.group(self.specs)
        except GroupError as err:
            if not err.recoverable:
                return PopulateResult(populated=False, errors=[err])
            self._log.debug("group_errors_recovered", job=self.name, error=str(err))
            groups = err.groups

        result = populate(
            integration,
            cluster_name,
            k8s_version,
            groups,
            self.specs,
            namespace_filter=namespace_filter,
        )
        if not result.populated and not result.errors:
            result.errors.append(AgentError("no data was populated"))
        return result
