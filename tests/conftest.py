"""Shared test fixtures for all test modules."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from helpers import FakeClock

from k8s_metrics_agent.clients.kubernetes import APIConfig, KubernetesClient
from k8s_metrics_agent.storage import MemoryStorage


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_storage(clock: FakeClock) -> MemoryStorage:
    return MemoryStorage(clock=clock)


@pytest.fixture
def mock_k8s() -> MagicMock:
    """KubernetesClient double answering ``config()`` with a token-bearing API config."""
    k8s = MagicMock(spec=KubernetesClient)
    k8s.config.return_value = APIConfig(host="https://10.0.0.1:443", bearer_token="sa-token", verify="/ca.crt")
    k8s.find_pods_by_label.return_value = []
    k8s.find_services_by_label.return_value = []
    return k8s
