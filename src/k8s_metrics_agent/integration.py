"""Pydantic models for the entity/metric batch published every cycle."""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from k8s_metrics_agent.definition.spec import SourceType

INTEGRATION_NAME = "com.github.k8s-metrics-agent"


class MetricSet(BaseModel):
    """One sample of metrics for an entity; ``event_type`` names the sample kind."""

    event_type: str
    metrics: dict[str, Any] = Field(default_factory=dict)
    source_types: dict[str, SourceType] = Field(default_factory=dict)

    def set_metric(self, name: str, value: Any, source_type: SourceType) -> None:
        """Set ``name`` to ``value``, coerced according to ``source_type``.

        Raises:
            ValueError: If a numeric source type gets a value that isn't a finite number.
        """
        if source_type is SourceType.ATTRIBUTE:
            self.metrics[name] = str(value)
        else:
            self.metrics[name] = _numeric(name, value)
        self.source_types[name] = source_type


class Entity(BaseModel):
    name: str
    type: str
    attributes: dict[str, str] = Field(default_factory=dict)
    metric_sets: list[MetricSet] = Field(default_factory=list)
    inventory: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def new_metric_set(self, event_type: str) -> MetricSet:
        metric_set = MetricSet(event_type=event_type)
        self.metric_sets.append(metric_set)
        return metric_set

    def add_attributes(self, **attributes: str) -> None:
        self.attributes.update(attributes)

    def set_inventory_item(self, key: str, field: str, value: Any) -> None:
        self.inventory.setdefault(key, {})[field] = value


class Integration(BaseModel):
    """A batch of entities, unique by ``(name, type)``."""

    name: str = INTEGRATION_NAME
    version: str
    entities: list[Entity] = Field(default_factory=list)
    _index: dict[tuple[str, str], Entity] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._index = {(e.name, e.type): e for e in self.entities}

    def entity(self, name: str, entity_type: str) -> Entity:
        """Return the entity with this name and type, creating it if needed."""
        if not name or not entity_type:
            msg = f"entity name and type are required, got name={name!r} type={entity_type!r}"
            raise ValueError(msg)
        key = (name, entity_type)
        existing = self._index.get(key)
        if existing is not None:
            return existing
        entity = Entity(name=name, type=entity_type)
        self.entities.append(entity)
        self._index[key] = entity
        return entity

    def clear(self) -> None:
        self.entities.clear()
        self._index.clear()


def _numeric(name: str, value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            msg = f"metric {name!r} has non-finite value {value}"
            raise ValueError(msg)
        return value
    msg = f"metric {name!r} needs a numeric value, got {value!r}"
    if not isinstance(value, str):
        raise ValueError(msg)
    try:
        number = float(value)
    except ValueError as err:
        raise ValueError(msg) from err
    return _numeric(name, number)
