"""Tests for the published batch models."""

from __future__ import annotations

import json
import math

import pytest

from k8s_metrics_agent.definition.spec import SourceType
from k8s_metrics_agent.integration import INTEGRATION_NAME, Entity, Integration, MetricSet


class TestMetricSet:
    def test_attributes_are_strings(self) -> None:
        metric_set = MetricSet(event_type="K8sPodSample")

        metric_set.set_metric("priority", 5, SourceType.ATTRIBUTE)

        assert metric_set.metrics["priority"] == "5"
        assert metric_set.source_types["priority"] is SourceType.ATTRIBUTE

    @pytest.mark.parametrize(("value", "expected"), [(True, 1), (3, 3), (0.25, 0.25), ("1.5", 1.5)])
    def test_numeric_coercion(self, value: object, expected: float) -> None:
        metric_set = MetricSet(event_type="K8sPodSample")

        metric_set.set_metric("m", value, SourceType.GAUGE)

        assert metric_set.metrics["m"] == expected

    @pytest.mark.parametrize("value", ["Running", None, math.inf, "nan"])
    def test_rejects_non_numbers(self, value: object) -> None:
        with pytest.raises(ValueError):
            MetricSet(event_type="K8sPodSample").set_metric("m", value, SourceType.RATE)


class TestIntegration:
    def test_entities_are_unique_by_name_and_type(self) -> None:
        integration = Integration(version="0.1.0")

        first = integration.entity("web", "k8s:prod:default:pod")
        again = integration.entity("web", "k8s:prod:default:pod")
        other = integration.entity("web", "k8s:prod:default:deployment")

        assert first is again
        assert other is not first
        assert len(integration.entities) == 2

    @pytest.mark.parametrize(("name", "entity_type"), [("", "t"), ("n", "")])
    def test_entity_needs_name_and_type(self, name: str, entity_type: str) -> None:
        with pytest.raises(ValueError, match="required"):
            Integration(version="0.1.0").entity(name, entity_type)

    def test_serialized_batch(self) -> None:
        integration = Integration(version="0.1.0")
        entity = integration.entity("node-1", "k8s:prod:node")
        entity.add_attributes(clusterName="prod")
        entity.new_metric_set("K8sNodeSample").set_metric("cpuUsedCores", 0.5, SourceType.GAUGE)

        payload = json.loads(integration.model_dump_json())

        assert payload["name"] == INTEGRATION_NAME
        assert payload["version"] == "0.1.0"
        assert payload["entities"][0]["attributes"] == {"clusterName": "prod"}
        metric_set = payload["entities"][0]["metric_sets"][0]
        assert metric_set["metrics"] == {"cpuUsedCores": 0.5}
        assert metric_set["source_types"] == {"cpuUsedCores": "gauge"}

    def test_lookup_finds_entities_given_at_construction(self) -> None:
        node = Entity(name="node-1", type="k8s:prod:node")
        integration = Integration(version="0.1.0", entities=[node])

        assert integration.entity("node-1", "k8s:prod:node") is node
        assert len(integration.entities) == 1

    def test_many_entities_stay_unique(self) -> None:
        integration = Integration(version="0.1.0")
        pods = [integration.entity(f"pod-{i}", "k8s:prod:default:pod") for i in range(2000)]

        again = [integration.entity(f"pod-{i}", "k8s:prod:default:pod") for i in range(2000)]

        assert all(a is b for a, b in zip(pods, again, strict=True))
        assert len(integration.entities) == 2000

    def test_clear(self) -> None:
        integration = Integration(version="0.1.0")
        integration.entity("a", "t")

        integration.clear()

        assert integration.entities == []

    def test_clear_forgets_entities(self) -> None:
        integration = Integration(version="0.1.0")
        old = integration.entity("a", "t")

        integration.clear()

        assert integration.entity("a", "t") is not old
        assert len(integration.entities) == 1
