"""Client capabilities shared by every discoverable service."""

from __future__ import annotations

from typing import Protocol, TypeVar

import requests

ClientT = TypeVar("ClientT", bound="HTTPClient", covariant=True)


class HTTPClient(Protocol):
    """A live connection to a discovered service."""

    @property
    def node_ip(self) -> str:
        """IP of the node the target service runs on."""
        ...

    def do(self, method: str, path: str, headers: dict[str, str] | None = None) -> requests.Response:
        """Send a request for ``path`` relative to the discovered endpoint."""
        ...

    def get(self, path: str) -> requests.Response:
        """Shorthand for ``do("GET", path)``."""
        ...


class Discoverer(Protocol[ClientT]):
    """Resolves a service to a single live client."""

    def discover(self, timeout: float) -> ClientT:
        ...


class MultiDiscoverer(Protocol[ClientT]):
    """Resolves a service to one live client per matching instance."""

    def discover(self, timeout: float) -> list[ClientT]:
        ...
