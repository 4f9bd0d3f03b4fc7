"""Exception hierarchy shared by discovery, storage, grouping and population."""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base class for all errors raised by the agent."""


class StorageError(AgentError):
    """A cache store operation failed."""


class KeyNotFoundError(StorageError, KeyError):
    """The requested key is not present in the store."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"key not found: {self.key}"


class StorageDecodeError(StorageError):
    """A stored payload could not be restored into the requested shape."""


class DiscoveryError(AgentError):
    """A service endpoint could not be discovered."""


class NoPodsFoundError(DiscoveryError):
    """No pods matched the discovery label."""


class ConnectionExhaustedError(AgentError):
    """Every connection attempt failed within the configured time budget."""

    def __init__(
        self, attempts: int, timeout: float, last_error: Exception | None = None, target: str = "endpoint"
    ) -> None:
        self.attempts = attempts
        self.target = target
        self.timeout = timeout
        self.last_error = last_error
        msg = f"failed to connect to {target} after {attempts} attempts (timeout: {_format_seconds(timeout)})"
        if last_error is not None:
            msg = f"{msg}: {last_error}"
        super().__init__(msg)


class GroupError(AgentError):
    """One or more errors raised while grouping raw metrics.

    A recoverable group error carries the partial data that is still usable in ``groups``;
    a non-recoverable one aborts the scrape job.
    """

    def __init__(
        self, errors: list[Exception], recoverable: bool = False, groups: dict[str, Any] | None = None
    ) -> None:
        self.errors = list(errors)
        self.recoverable = recoverable
        self.groups = groups if groups is not None else {}
        super().__init__(str(self))

    def __str__(self) -> str:
        kind = "Recoverable" if self.recoverable else "Non-recoverable"
        return f"{kind} error group: {', '.join(str(e) for e in self.errors)}"


class PopulateError(AgentError):
    """A single metric or entity could not be populated."""

    def __init__(self, entity_id: str, err: Exception | str, metric: str | None = None) -> None:
        self.entity_id = entity_id
        self.metric = metric
        self.err = err
        if metric:
            msg = f"error populating metric {metric!r} for entity ID {entity_id!r}: {err}"
        else:
            msg = f"error populating entity ID {entity_id!r}: {err}"
        super().__init__(msg)


class SinkError(AgentError):
    """Publishing a batch to the sink failed."""


def _format_seconds(seconds: float) -> str:
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{seconds:g}s"


class FetchError(AgentError):
    """A metric value could not be fetched or transformed from raw groups."""
