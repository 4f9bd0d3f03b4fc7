"""Raw group types and the fetch/transform helpers metric specs are built from.

A fetch function receives ``(group_label, entity_id, groups)`` and returns the metric value,
raising :class:`~k8s_metrics_agent.errors.FetchError` when it can't. Returning a
:class:`FetchedValues` mapping fans the result out into several metrics.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from k8s_metrics_agent.errors import FetchError

RawMetrics = dict[str, Any]
RawGroups = dict[str, dict[str, RawMetrics]]

FetchFunc = Callable[[str, str, RawGroups], Any]
TransformFunc = Callable[[Any], Any]


class FetchedValues(dict):
    """Several metrics produced by one fetch function, keyed by metric name."""


def from_raw(metric_key: str) -> FetchFunc:
    """Fetch ``metric_key`` from the entity's raw metrics as is."""

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        group = groups.get(group_label)
        if group is None:
            raise FetchError("group not found")
        entity = group.get(entity_id)
        if entity is None:
            raise FetchError("entity not found")
        if metric_key not in entity:
            raise FetchError("metric not found")
        return entity[metric_key]

    return fetch


def transform(fetch: FetchFunc, transform_func: TransformFunc) -> FetchFunc:
    """Apply ``transform_func`` to whatever ``fetch`` returns."""

    def fetch_and_transform(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        return transform_func(fetch(group_label, entity_id, groups))

    return fetch_and_transform


def fetch_with_default(fetch: FetchFunc, default: Any) -> FetchFunc:
    """Return ``default`` whenever ``fetch`` fails."""

    def fetch_or_default(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        try:
            return fetch(group_label, entity_id, groups)
        except FetchError:
            return default

    return fetch_or_default


def fetch_if_missing(replacement: FetchFunc, main: FetchFunc) -> FetchFunc:
    """Fetch ``replacement`` only when ``main`` is not available.

    When ``main`` is available nothing is emitted: an empty :class:`FetchedValues` is returned.
    """

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        try:
            main(group_label, entity_id, groups)
        except FetchError:
            return replacement(group_label, entity_id, groups)
        return FetchedValues()

    return fetch


def subtract(left: FetchFunc, right: FetchFunc) -> FetchFunc:
    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        return _as_float(left(group_label, entity_id, groups)) - _as_float(right(group_label, entity_id, groups))

    return fetch


def to_utilization(dividend: FetchFunc, divisor: FetchFunc) -> FetchFunc:
    """Percentage of ``dividend`` over ``divisor``."""

    def fetch(group_label: str, entity_id: str, groups: RawGroups) -> Any:
        return compute_percentage(dividend(group_label, entity_id, groups), divisor(group_label, entity_id, groups))

    return fetch


def compute_percentage(dividend: Any, divisor: Any) -> float:
    a = _as_float(dividend)
    b = _as_float(divisor)
    if b == 0:
        raise FetchError("division by zero")
    return a / b * 100


def from_nano(value: Any) -> float:
    """Nanocores to cores."""
    return _as_float(value) / 1_000_000_000


def to_cores(value: Any) -> float:
    """Millicores to cores."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise FetchError("error transforming to cores")
    return value / 1000


def to_numeric_boolean(value: Any) -> int:
    if value in ("true", "True") or value is True or (type(value) is int and value == 1):
        return 1
    if value in ("false", "False") or value is False or (type(value) is int and value == 0):
        return 0
    if value == "unknown":
        return -1
    raise FetchError(f"value {value!r} can not be converted to numeric boolean")


def _as_float(value: Any) -> float:
    if isinstance(value, FetchedValues):
        if len(value) != 1:
            raise FetchError("unable to convert multiple fetched values")
        return _as_float(next(iter(value.values())))
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FetchError(f"type not supported {type(value).__name__}")
    return float(value)


def to_timestamp(value: Any) -> int:
    """Aware datetime to Unix seconds."""
    if not isinstance(value, datetime):
        raise FetchError(f"error converting {type(value).__name__} to timestamp")
    return int(value.timestamp())
