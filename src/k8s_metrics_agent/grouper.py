"""Grouper capability and the fill-only merge shared by every grouper."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from k8s_metrics_agent.definition.fetch import RawGroups
from k8s_metrics_agent.definition.spec import SpecGroups

# A fetch function returns a partial RawGroups. It may raise a recoverable GroupError
# carrying partial data; anything else aborts the grouping.
FetchFunc = Callable[[], RawGroups]


class Grouper(Protocol):
    def group(self, specs: SpecGroups) -> RawGroups:
        """Return one RawGroups snapshot for this scrape cycle.

        Raises:
            GroupError: Recoverable ones carry the partial data in ``groups``.
        """
        ...


def fill_groups_and_merge_non_existent(destination: RawGroups, source: RawGroups) -> None:
    """Merge ``source`` into ``destination`` without overwriting anything.

    A group missing from ``destination`` is adopted as a whole. For existing groups only the
    entities already in ``destination`` are enriched, and only with keys they don't have yet;
    entities that exist only in ``source`` are not added.
    """
    for label, group in source.items():
        if label not in destination:
            destination[label] = group
            continue

        for entity_id, metrics in destination[label].items():
            incoming = group.get(entity_id)
            if incoming is None:
                continue
            for key, value in incoming.items():
                metrics.setdefault(key, value)
