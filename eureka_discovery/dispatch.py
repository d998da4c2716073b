"""Client-side load-balanced dispatch of HTTP calls to discovered instances."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol
from urllib.parse import parse_qsl, urlsplit

import requests

from .balancer import Strategy, StrategyRegistry
from .config import DispatchConfig
from .exceptions import (
    ApplicationNotKnownError,
    DispatchError,
    InvalidLogicalURLError,
)
from .registry.models import Applications

logger = logging.getLogger(__name__)


class ApplicationSource(Protocol):
    """Anything exposing the current application snapshot (the DiscoveryClient)."""

    @property
    def applications(self) -> Applications:
        ...


@dataclass
class DispatchResult:
    """Outcome of one dispatched call. ``data`` is set only when a result target was given."""

    url: str
    status_code: int
    response: requests.Response
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _convert(target: Callable[..., Any], payload: Any) -> Any:
    """Build target from a decoded body. Dataclasses ignore keys they do not declare."""
    if dataclasses.is_dataclass(target):
        if not isinstance(payload, dict):
            raise TypeError(f"expected a JSON object for {target.__name__}, got {type(payload).__name__}")
        names = {f.name for f in dataclasses.fields(target) if f.init}
        return target(**{k: v for k, v in payload.items() if k in names})
    return target(payload)


class DispatchClient:
    """Resolves a logical application name to an instance URL and issues the call.

    Each application gets its own strategy instance so round-robin cursors are
    never shared between applications.
    """

    def __init__(
        self,
        discovery: ApplicationSource,
        strategy: str = "random",
        registry: StrategyRegistry | None = None,
        session: requests.Session | None = None,
        timeout: float = 10,
    ):
        self._discovery = discovery
        self._registry = registry or StrategyRegistry()
        # Unknown strategy names fail here, not at the first call
        self._registry.create(strategy)
        self._strategy = strategy
        self._session = session or requests.Session()
        self._timeout = timeout
        self._balancers: dict[str, Strategy] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        discovery: ApplicationSource,
        config: DispatchConfig,
        registry: StrategyRegistry | None = None,
        session: requests.Session | None = None,
    ) -> DispatchClient:
        """Build a client from the ``dispatch:`` section of the YAML config."""
        return cls(discovery, strategy=config.strategy, registry=registry, session=session, timeout=config.timeout)

    @property
    def strategy(self) -> str:
        return self._strategy

    def request(self) -> DispatchRequest:
        """Start a new request builder for one logical call."""
        return DispatchRequest(self)

    # ── Resolution ──────────────────────────────────────────────────

    def resolve(self, app: str) -> list[str]:
        """Base URLs of every cached instance of app, trailing '/' trimmed."""
        application = self._discovery.applications.get(app)
        if application is None:
            logger.warning("No cached instances for application %s", app, extra={"app": app})
            raise ApplicationNotKnownError(app)
        urls = [url for url in application.base_urls if url]
        if not urls:
            logger.warning("Application %s has no instances", app, extra={"app": app})
            raise ApplicationNotKnownError(app)
        return urls

    def choose(self, app: str) -> str:
        """Pick one instance base URL for app using its balancer."""
        urls = self.resolve(app)
        url = self._balancer_for(app).select(urls)
        logger.debug("Selected %s for %s", url, app, extra={"app": app, "url": url, "strategy": self._strategy})
        return url

    def _balancer_for(self, app: str) -> Strategy:
        key = app.lower()
        with self._lock:
            balancer = self._balancers.get(key)
            if balancer is None:
                balancer = self._registry.create(self._strategy)
                self._balancers[key] = balancer
            return balancer

    # ── Sending ─────────────────────────────────────────────────────

    def send(
        self,
        method: str,
        logical_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        body: Any = None,
        result: Callable[..., Any] | None = None,
    ) -> DispatchResult:
        """Dispatch one call to http://<app>/<path>. No retry against other instances."""
        parts = urlsplit(logical_url)
        app = parts.hostname
        if not app:
            raise InvalidLogicalURLError(f"Dispatch URL has no application host: {logical_url!r}")

        base_url = self.choose(app)
        url = f"{base_url}{parts.path}"

        # Pairs, not a dict: repeated keys such as ?tag=a&tag=b are kept
        query: list[tuple[str, str]] = parse_qsl(parts.query, keep_blank_values=True)
        if params:
            query.extend(params.items())

        kwargs: dict[str, Any] = {
            "headers": dict(headers or {}),
            "params": query or None,
            "timeout": self._timeout,
        }
        if isinstance(body, (bytes, str)):
            kwargs["data"] = body
        elif body is not None:
            kwargs["json"] = body

        logger.info("%s %s", method.upper(), url, extra={"app": app, "url": base_url})
        try:
            resp = self._session.request(method.upper(), url, **kwargs)
        except requests.RequestException as exc:
            raise DispatchError(f"{method.upper()} {url} failed: {exc}") from exc

        outcome = DispatchResult(url=url, status_code=resp.status_code, response=resp)
        if result is not None and outcome.ok:
            try:
                payload = resp.json()
            except ValueError as exc:
                raise DispatchError(
                    f"Response from {url} is not valid JSON: {exc}", status_code=resp.status_code,
                ) from exc
            try:
                outcome.data = _convert(result, payload)
            except (TypeError, ValueError, KeyError) as exc:
                raise DispatchError(
                    f"Response from {url} does not match the result type: {exc}", status_code=resp.status_code,
                ) from exc
        return outcome


class DispatchRequest:
    """Builder for a single logical call.

    Usage:
        orders = client.request().header("X-Trace", "1").params({"page": "2"}) \\
            .result(OrderPage).get("http://orderservice/api/orders")
    """

    def __init__(self, client: DispatchClient):
        self._client = client
        self._headers: dict[str, str] = {}
        self._params: dict[str, str] = {}
        self._body: Any = None
        self._result: Callable[..., Any] | None = None

    def header(self, key: str, value: str) -> DispatchRequest:
        self._headers[key] = value
        return self

    def headers(self, headers: Mapping[str, str]) -> DispatchRequest:
        self._headers.update(headers)
        return self

    def body(self, body: Any) -> DispatchRequest:
        """JSON-encoded unless bytes or str."""
        self._body = body
        return self

    def params(self, params: Mapping[str, str]) -> DispatchRequest:
        self._params.update(params)
        return self

    def result(self, target: Callable[..., Any]) -> DispatchRequest:
        """Parse a 2xx JSON response with target (a dataclass or any callable)."""
        self._result = target
        return self

    def send(self, method: str, logical_url: str) -> DispatchResult:
        return self._client.send(
            method,
            logical_url,
            headers=self._headers,
            params=self._params,
            body=self._body,
            result=self._result,
        )

    def get(self, logical_url: str) -> DispatchResult:
        return self.send("GET", logical_url)

    def post(self, logical_url: str) -> DispatchResult:
        return self.send("POST", logical_url)

    def put(self, logical_url: str) -> DispatchResult:
        return self.send("PUT", logical_url)

    def patch(self, logical_url: str) -> DispatchResult:
        return self.send("PATCH", logical_url)

    def delete(self, logical_url: str) -> DispatchResult:
        return self.send("DELETE", logical_url)
