"""Metric specs and queries for the kube-state-metrics entities the agent reports."""

from __future__ import annotations

from k8s_metrics_agent.definition.fetch import fetch_with_default, subtract, to_numeric_boolean, transform
from k8s_metrics_agent.definition.generators import namespace_from_metrics
from k8s_metrics_agent.definition.spec import MetricSpec, SourceType, SpecGroup, SpecGroups
from k8s_metrics_agent.prometheus import (
    Query,
    QueryValue,
    from_label_value,
    from_label_value_entity_id_generator,
    from_label_value_entity_type_generator,
    from_metric_with_prefixed_labels,
    from_value,
)

GAUGE = SourceType.GAUGE
ATTRIBUTE = SourceType.ATTRIBUTE


def _workload_specs(kind: str, desired: str, ready: str, extra: list[MetricSpec]) -> SpecGroup:
    created = f"kube_{kind}_created"
    return SpecGroup(
        id_generator=from_label_value_entity_id_generator(created, kind),
        type_generator=from_label_value_entity_type_generator(created),
        namespace_getter=namespace_from_metrics,
        specs=[
            MetricSpec("createdAt", from_value(created), GAUGE),
            MetricSpec("podsDesired", from_value(desired), GAUGE),
            MetricSpec("podsReady", from_value(ready), GAUGE),
            *extra,
            MetricSpec("metadataGeneration", from_value(f"kube_{kind}_metadata_generation"), GAUGE),
            MetricSpec("namespaceName", from_label_value(created, "namespace"), ATTRIBUTE),
            MetricSpec(f"{kind}Name", from_label_value(created, kind), ATTRIBUTE),
            MetricSpec("label.*", from_metric_with_prefixed_labels(f"kube_{kind}_labels", "label"), ATTRIBUTE),
            MetricSpec("podsMissing", subtract(from_value(desired), from_value(ready)), GAUGE),
        ],
    )


KSM_SPECS: SpecGroups = {
    "namespace": SpecGroup(
        type_generator=from_label_value_entity_type_generator("kube_namespace_created"),
        namespace_getter=namespace_from_metrics,
        specs=[
            MetricSpec("createdAt", from_value("kube_namespace_created"), GAUGE),
            MetricSpec("namespaceName", from_label_value("kube_namespace_created", "namespace"), ATTRIBUTE),
            MetricSpec("status", from_label_value("kube_namespace_status_phase", "phase"), ATTRIBUTE),
            MetricSpec("label.*", from_metric_with_prefixed_labels("kube_namespace_labels", "label"), ATTRIBUTE),
        ],
    ),
    "deployment": _workload_specs(
        "deployment",
        "kube_deployment_spec_replicas",
        "kube_deployment_status_replicas_ready",
        [
            MetricSpec("podsTotal", from_value("kube_deployment_status_replicas"), GAUGE),
            MetricSpec("podsAvailable", from_value("kube_deployment_status_replicas_available"), GAUGE),
            MetricSpec("podsUnavailable", from_value("kube_deployment_status_replicas_unavailable"), GAUGE),
            MetricSpec("podsUpdated", from_value("kube_deployment_status_replicas_updated"), GAUGE),
            MetricSpec("isPaused", from_value("kube_deployment_spec_paused"), GAUGE, optional=True),
        ],
    ),
    "daemonset": _workload_specs(
        "daemonset",
        "kube_daemonset_status_desired_number_scheduled",
        "kube_daemonset_status_number_ready",
        [
            MetricSpec("podsScheduled", from_value("kube_daemonset_status_current_number_scheduled"), GAUGE),
            MetricSpec("podsAvailable", from_value("kube_daemonset_status_number_available"), GAUGE),
            MetricSpec("podsUnavailable", from_value("kube_daemonset_status_number_unavailable"), GAUGE),
            MetricSpec("podsMisscheduled", from_value("kube_daemonset_status_number_misscheduled"), GAUGE),
        ],
    ),
    "statefulset": _workload_specs(
        "statefulset",
        "kube_statefulset_replicas",
        "kube_statefulset_status_replicas_ready",
        [
            MetricSpec("podsCurrent", from_value("kube_statefulset_status_replicas_current"), GAUGE),
            MetricSpec("podsTotal", from_value("kube_statefulset_status_replicas"), GAUGE),
            MetricSpec("podsUpdated", from_value("kube_statefulset_status_replicas_updated"), GAUGE),
        ],
    ),
    "pod": SpecGroup(
        id_generator=from_label_value_entity_id_generator("kube_pod_info", "pod"),
        type_generator=from_label_value_entity_type_generator("kube_pod_info"),
        namespace_getter=namespace_from_metrics,
        specs=[
            MetricSpec("createdAt", from_value("kube_pod_created"), GAUGE),
            MetricSpec("createdKind", from_label_value("kube_pod_info", "created_by_kind"), ATTRIBUTE),
            MetricSpec("createdBy", from_label_value("kube_pod_info", "created_by_name"), ATTRIBUTE),
            MetricSpec("nodeIP", from_label_value("kube_pod_info", "host_ip"), ATTRIBUTE),
            MetricSpec("namespaceName", from_label_value("kube_pod_info", "namespace"), ATTRIBUTE),
            MetricSpec("nodeName", from_label_value("kube_pod_info", "node"), ATTRIBUTE),
            MetricSpec("podName", from_label_value("kube_pod_info", "pod"), ATTRIBUTE),
            MetricSpec(
                "isReady",
                transform(
                    fetch_with_default(from_label_value("kube_pod_status_ready", "condition"), "false"),
                    to_numeric_boolean,
                ),
                GAUGE,
            ),
            MetricSpec("status", from_label_value("kube_pod_status_phase", "phase"), ATTRIBUTE),
            MetricSpec(
                "isScheduled",
                transform(from_label_value("kube_pod_status_scheduled", "condition"), to_numeric_boolean),
                GAUGE,
            ),
            MetricSpec(
                "priorityClassName", from_label_value("kube_pod_info", "priority_class"), ATTRIBUTE, optional=True
            ),
            MetricSpec("label.*", from_metric_with_prefixed_labels("kube_pod_labels", "label"), ATTRIBUTE),
        ],
    ),
}

# Status series are one per condition or phase; only the one set to 1 is kept.
_ONE = QueryValue(value=1)

KSM_QUERIES: list[Query] = [
    Query("kube_namespace_created"),
    Query("kube_namespace_labels", value=_ONE),
    Query("kube_namespace_status_phase", value=_ONE),
    Query("kube_deployment_created"),
    Query("kube_deployment_labels"),
    Query("kube_deployment_metadata_generation"),
    Query("kube_deployment_spec_replicas"),
    Query("kube_deployment_spec_paused"),
    Query("kube_deployment_status_replicas"),
    Query("kube_deployment_status_replicas_ready"),
    Query("kube_deployment_status_replicas_available"),
    Query("kube_deployment_status_replicas_unavailable"),
    Query("kube_deployment_status_replicas_updated"),
    Query("kube_daemonset_created"),
    Query("kube_daemonset_labels"),
    Query("kube_daemonset_metadata_generation"),
    Query("kube_daemonset_status_desired_number_scheduled"),
    Query("kube_daemonset_status_current_number_scheduled"),
    Query("kube_daemonset_status_number_available"),
    Query("kube_daemonset_status_number_ready"),
    Query("kube_daemonset_status_number_unavailable"),
    Query("kube_daemonset_status_number_misscheduled"),
    Query("kube_statefulset_created"),
    Query("kube_statefulset_labels"),
    Query("kube_statefulset_metadata_generation"),
    Query("kube_statefulset_replicas"),
    Query("kube_statefulset_status_replicas_ready"),
    Query("kube_statefulset_status_replicas_current"),
    Query("kube_statefulset_status_replicas"),
    Query("kube_statefulset_status_replicas_updated"),
    Query("kube_pod_created"),
    Query("kube_pod_info"),
    Query("kube_pod_labels"),
    Query("kube_pod_status_phase", value=_ONE),
    Query("kube_pod_status_ready", value=_ONE),
    Query("kube_pod_status_scheduled", value=_ONE),
]
