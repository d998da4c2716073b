"""REST client for the registry server's instance endpoints."""

from __future__ import annotations

import logging
from typing import Any

import requests

from ..config import EurekaConfig
from ..exceptions import InstanceNotFoundError, RegistryAPIError
from .models import Applications, Instance, InstanceStatus, parse_applications

logger = logging.getLogger(__name__)


class RegistryClient:
    """Thin wrapper around the registry REST operations.

    Every call takes the endpoint explicitly; choosing among replicas is the
    caller's job.
    """

    def __init__(self, config: EurekaConfig):
        self._session = requests.Session()
        self._session.headers["Accept"] = "application/json"
        self._session.headers["Content-Type"] = "application/json"
        self._session.verify = config.verify_ssl
        self._timeout = config.timeout

    def close(self) -> None:
        self._session.close()

    # ── Registration ────────────────────────────────────────────────

    def register(self, endpoint: str, app: str, instance: Instance) -> None:
        """POST apps/{APP}. Any 2xx is success (the registry answers 204)."""
        resp = self._request("POST", endpoint, f"apps/{app.upper()}", json=instance.to_payload())
        if not 200 <= resp.status_code < 300:
            raise self._status_error("register", resp)

    def unregister(self, endpoint: str, app: str, instance_id: str) -> None:
        """DELETE apps/{APP}/{id}. Only 200 is success."""
        resp = self._request("DELETE", endpoint, f"apps/{app.upper()}/{instance_id}")
        if resp.status_code != 200:
            raise self._status_error("unregister", resp)

    # ── Lease renewal ───────────────────────────────────────────────

    def heartbeat(
        self,
        endpoint: str,
        app: str,
        instance_id: str,
        status: InstanceStatus = InstanceStatus.UP,
    ) -> None:
        """PUT apps/{APP}/{id}?status=UP. Raises InstanceNotFoundError on 404."""
        resp = self._request(
            "PUT", endpoint, f"apps/{app.upper()}/{instance_id}",
            params={"status": status.value},
        )
        if resp.status_code == 404:
            raise InstanceNotFoundError(response_body=resp.text)
        if resp.status_code != 200:
            raise self._status_error("heartbeat", resp)

    # ── Registry listing ────────────────────────────────────────────

    def refresh(self, endpoint: str) -> Applications:
        """GET apps and parse the full application listing."""
        resp = self._request("GET", endpoint, "apps")
        if resp.status_code != 200:
            raise self._status_error("refresh", resp)
        try:
            document = resp.json()
        except ValueError as exc:
            raise RegistryAPIError(
                f"Registry listing is not valid JSON: {exc}",
                status_code=resp.status_code,
                response_body=resp.text,
            ) from exc
        return parse_applications(document)

    # ── Internal HTTP helpers ───────────────────────────────────────

    @staticmethod
    def _status_error(operation: str, resp: requests.Response) -> RegistryAPIError:
        return RegistryAPIError(
            f"{operation} failed: HTTP {resp.status_code} {resp.reason or ''}".rstrip(),
            status_code=resp.status_code,
            response_body=resp.text,
        )

    def _request(self, method: str, endpoint: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{endpoint}{path}"
        kwargs.setdefault("timeout", self._timeout)
        logger.debug("%s %s params=%s", method, url, kwargs.get("params"))

        try:
            return self._session.request(method, url, **kwargs)
        except requests.RequestException as exc:
            raise RegistryAPIError(f"Request to {url} failed: {exc}") from exc
