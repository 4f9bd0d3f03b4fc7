"""Tests for fetch helpers, value transforms and entity ID/type generators."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from k8s_metrics_agent.definition.fetch import (
    FetchedValues,
    compute_percentage,
    fetch_if_missing,
    fetch_with_default,
    from_nano,
    from_raw,
    subtract,
    to_cores,
    to_numeric_boolean,
    to_timestamp,
    to_utilization,
    transform,
)
from k8s_metrics_agent.definition.generators import (
    from_raw_entity_id_group_entity_id_generator,
    from_raw_groups_entity_id_generator,
    from_raw_groups_entity_type_generator,
    metric_set_type_guesser,
    metric_set_type_guesser_with_custom_group,
    namespace_from_metrics,
)
from k8s_metrics_agent.errors import FetchError

GROUPS = {
    "pod": {
        "kube-system_coredns-1": {"namespace": "kube-system", "podName": "coredns-1", "used": 25, "limit": 100},
    },
    "container": {
        "kube-system_coredns-1_dns": {"namespace": "kube-system", "podName": "coredns-1", "containerName": "dns"},
    },
    "node": {"node-1": {"nodeName": "node-1"}},
}


class TestFromRaw:
    def test_value(self) -> None:
        assert from_raw("used")("pod", "kube-system_coredns-1", GROUPS) == 25

    @pytest.mark.parametrize(
        ("group", "entity", "key", "message"),
        [
            ("volume", "x", "used", "group not found"),
            ("pod", "missing", "used", "entity not found"),
            ("pod", "kube-system_coredns-1", "nope", "metric not found"),
        ],
    )
    def test_errors(self, group: str, entity: str, key: str, message: str) -> None:
        with pytest.raises(FetchError, match=message):
            from_raw(key)(group, entity, GROUPS)


class TestCombinators:
    def test_transform(self) -> None:
        assert transform(from_raw("used"), lambda v: v * 2)("pod", "kube-system_coredns-1", GROUPS) == 50

    def test_fetch_with_default(self) -> None:
        assert fetch_with_default(from_raw("nope"), "false")("pod", "kube-system_coredns-1", GROUPS) == "false"

    def test_fetch_if_missing(self) -> None:
        replacement = from_raw("limit")

        assert fetch_if_missing(replacement, from_raw("nope"))("pod", "kube-system_coredns-1", GROUPS) == 100
        assert fetch_if_missing(replacement, from_raw("used"))("pod", "kube-system_coredns-1", GROUPS) == {}

    def test_subtract(self) -> None:
        assert subtract(from_raw("limit"), from_raw("used"))("pod", "kube-system_coredns-1", GROUPS) == 75.0

    def test_to_utilization(self) -> None:
        assert to_utilization(from_raw("used"), from_raw("limit"))("pod", "kube-system_coredns-1", GROUPS) == 25.0


class TestTransforms:
    def test_compute_percentage_by_zero(self) -> None:
        with pytest.raises(FetchError, match="division by zero"):
            compute_percentage(1, 0)

    def test_compute_percentage_of_single_fetched_value(self) -> None:
        assert compute_percentage(FetchedValues(a=1), 4) == 25.0

    def test_compute_percentage_rejects_multiple_values(self) -> None:
        with pytest.raises(FetchError):
            compute_percentage(FetchedValues(a=1, b=2), 4)

    def test_from_nano(self) -> None:
        assert from_nano(250_000_000) == 0.25

    def test_to_cores(self) -> None:
        assert to_cores(1500) == 1.5
        with pytest.raises(FetchError):
            to_cores("1500")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [("true", 1), ("True", 1), (True, 1), (1, 1), ("false", 0), ("False", 0), (False, 0), (0, 0), ("unknown", -1)],
    )
    def test_to_numeric_boolean(self, value: object, expected: int) -> None:
        assert to_numeric_boolean(value) == expected

    @pytest.mark.parametrize("value", ["Unknown", "yes", 2, None])
    def test_to_numeric_boolean_rejects(self, value: object) -> None:
        with pytest.raises(FetchError):
            to_numeric_boolean(value)

    def test_to_timestamp(self) -> None:
        assert to_timestamp(datetime(2024, 3, 1, tzinfo=UTC)) == 1709251200
        with pytest.raises(FetchError):
            to_timestamp("2024-03-01")


class TestGenerators:
    def test_id_from_raw_groups(self) -> None:
        generate = from_raw_groups_entity_id_generator("containerName")

        assert generate("container", "kube-system_coredns-1_dns", GROUPS) == "dns"
        with pytest.raises(FetchError):
            from_raw_groups_entity_id_generator("image")("container", "kube-system_coredns-1_dns", GROUPS)

    def test_id_strips_group_prefix(self) -> None:
        generate = from_raw_entity_id_group_entity_id_generator("namespace")

        assert generate("pod", "kube-system_coredns-1", GROUPS) == "coredns-1"

    def test_id_without_prefix_is_kept(self) -> None:
        groups = {"pod": {"other": {"namespace": "default"}}}

        assert from_raw_entity_id_group_entity_id_generator("namespace")("pod", "other", groups) == "other"

    @pytest.mark.parametrize(
        ("group", "entity", "expected"),
        [
            ("node", "node-1", "k8s:prod:node"),
            ("pod", "kube-system_coredns-1", "k8s:prod:kube-system:pod"),
            ("container", "kube-system_coredns-1_dns", "k8s:prod:kube-system:coredns-1:container"),
        ],
    )
    def test_entity_type(self, group: str, entity: str, expected: str) -> None:
        assert from_raw_groups_entity_type_generator(group, entity, GROUPS, "prod") == expected

    def test_entity_type_needs_namespace(self) -> None:
        groups = {"volume": {"v": {"namespace": ""}}}

        with pytest.raises(FetchError, match="empty namespace"):
            from_raw_groups_entity_type_generator("volume", "v", groups, "prod")

    def test_namespace_from_metrics(self) -> None:
        assert namespace_from_metrics({"namespace": "default"}) == "default"
        assert namespace_from_metrics({}) == ""

    def test_metric_set_type(self) -> None:
        assert metric_set_type_guesser("pod") == "K8sPodSample"
        assert metric_set_type_guesser("persistent-volume") == "K8sPersistentVolumeSample"
        assert metric_set_type_guesser_with_custom_group("api-server")("anything") == "K8sApiServerSample"
