"""requests-based endpoint client and a linear-backoff multi-try session."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import requests
import structlog

log = structlog.get_logger()

HTTP_SCHEME = "http"
HTTPS_SCHEME = "https"


def join_url_path(base: str, path: str) -> str:
    """Join two URL paths, collapsing duplicate slashes."""
    parts = [p.strip("/") for p in (base, path) if p and p.strip("/")]
    return "/" + "/".join(parts)


class EndpointClient:
    """HTTP client bound to one base URL, one node IP and one request timeout.

    A bearer token, when given, is sent as an ``Authorization`` header on every request.
    """

    def __init__(
        self,
        base_url: str,
        node_ip: str,
        *,
        timeout: float,
        session: requests.Session | None = None,
        bearer_token: str | None = None,
        verify: bool | str = True,
        logger: Any = None,
    ) -> None:
        parts = urlsplit(base_url)
        if not parts.scheme or not parts.netloc:
            msg = f"invalid endpoint URL: {base_url!r}"
            raise ValueError(msg)
        self.scheme = parts.scheme
        self.host = parts.netloc
        self.base_path = parts.path
        self.timeout = timeout
        self.bearer_token = bearer_token
        self.verify = verify
        self._node_ip = node_ip
        self._session = session or requests.Session()
        self._log = logger or log

    @property
    def node_ip(self) -> str:
        return self._node_ip

    @property
    def base_url(self) -> str:
        return urlunsplit((self.scheme, self.host, self.base_path, "", ""))

    @property
    def session(self) -> requests.Session:
        return self._session

    def url_for(self, path: str) -> str:
        return urlunsplit((self.scheme, self.host, join_url_path(self.base_path, path), "", ""))

    def do(self, method: str, path: str, headers: dict[str, str] | None = None) -> requests.Response:
        url = self.url_for(path)
        request_headers = dict(headers or {})
        if self.bearer_token:
            request_headers["Authorization"] = f"Bearer {self.bearer_token}"
        self._log.debug("http_request", method=method, url=url)
        return self._session.request(method, url, headers=request_headers, timeout=self.timeout, verify=self.verify)

    def get(self, path: str) -> requests.Response:
        return self.do("GET", path)


class LinearBackoffSession:
    """Retries a request up to ``max_retries`` times, sleeping ``attempt * backoff`` in between.

    Connection errors and 5xx responses are retried; ``log_hook`` is called with the attempt
    number and the failure after every failed attempt.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        max_retries: int = 5,
        backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        log_hook: Callable[[int, Exception], None] | None = None,
    ) -> None:
        if max_retries < 1:
            msg = "max_retries must be at least 1"
            raise ValueError(msg)
        self._session = session or requests.Session()
        self._max_retries = max_retries
        self._backoff = backoff
        self._sleep = sleep
        self._log_hook = log_hook or _default_log_hook

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        attempt = 0
        while True:
            attempt += 1
            error: requests.RequestException
            try:
                response = self._session.request(method, url, **kwargs)
            except requests.RequestException as err:
                error = err
            else:
                if response.status_code < 500:
                    return response
                error = requests.HTTPError(f"server error {response.status_code} from {url}", response=response)

            self._log_hook(attempt, error)
            if attempt >= self._max_retries:
                raise error
            self._sleep(attempt * self._backoff)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)


def _default_log_hook(attempt: int, err: Exception) -> None:
    log.warning("http_attempt_failed", attempt=attempt, error=str(err))
