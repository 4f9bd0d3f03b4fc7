"""Publishes the integration batch to the local telemetry agent."""

from __future__ import annotations

import requests
import structlog

from k8s_metrics_agent.clients.http import LinearBackoffSession
from k8s_metrics_agent.errors import SinkError
from k8s_metrics_agent.integration import Integration

log = structlog.get_logger()

DEFAULT_SINK_URL = "http://localhost:8001/v1/data"


class HTTPSink:
    """POSTs the JSON-encoded batch; the telemetry agent answers 204 on success."""

    def __init__(
        self, url: str = DEFAULT_SINK_URL, timeout: float = 15.0, session: LinearBackoffSession | None = None
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or LinearBackoffSession()

    def publish(self, integration: Integration) -> None:
        body = integration.model_dump_json()
        try:
            response = self._session.post(
                self.url,
                data=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as err:
            msg = f"publishing to {self.url}: {err}"
            raise SinkError(msg) from err

        if response.status_code != 204:
            msg = f"unexpected status code from {self.url}: {response.status_code}"
            raise SinkError(msg)
        log.debug("integration_published", url=self.url, entities=len(integration.entities), bytes=len(body))
