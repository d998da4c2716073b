"""Data models for registered instances and the cached application snapshot."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from ..config import EurekaConfig
from ..exceptions import RegistryAPIError

DATA_CENTER_CLASS = "com.netflix.appinfo.InstanceInfo$DefaultDataCenterInfo"


class InstanceStatus(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    STARTING = "STARTING"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> InstanceStatus:
        try:
            return cls(str(value).upper())
        except ValueError:
            return cls.UNKNOWN


def _unwrap_port(value: Any) -> int | None:
    """Registry ports arrive as {"$": 8080, "@enabled": "true"} or as plain numbers."""
    if isinstance(value, dict):
        value = value.get("$")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Instance:
    """One registered process of an application."""

    app: str
    instance_id: str
    ip_address: str
    port: int
    home_page_url: str
    host_name: str = ""
    status: InstanceStatus = InstanceStatus.UP
    vip_address: str = ""
    lease_renewal_interval: int = 30
    lease_duration: int = 90
    last_renewal_timestamp: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        """Home page URL with trailing path separators trimmed, used for outbound calls."""
        return self.home_page_url.rstrip("/")

    @classmethod
    def for_local(cls, config: EurekaConfig, ip_address: str) -> Instance:
        """Build the descriptor this process registers itself with."""
        host = config.hostname or ip_address
        return cls(
            app=config.app,
            instance_id=f"{ip_address}:{config.port}",
            ip_address=ip_address,
            port=config.port,
            home_page_url=f"http://{ip_address}:{config.port}/",
            host_name=host,
            status=InstanceStatus.UP,
            vip_address=config.app,
            lease_renewal_interval=config.renewal_interval_seconds,
            lease_duration=config.lease_duration_seconds,
            metadata=dict(config.metadata),
        )

    def to_payload(self) -> dict[str, Any]:
        """Registration document: {"instance": {...}} in the registry's REST shape."""
        return {
            "instance": {
                "instanceId": self.instance_id,
                "hostName": self.host_name or self.ip_address,
                "app": self.app.upper(),
                "ipAddr": self.ip_address,
                "status": self.status.value,
                "port": {"$": self.port, "@enabled": "true"},
                "securePort": {"$": 443, "@enabled": "false"},
                "homePageUrl": self.home_page_url,
                "statusPageUrl": f"{self.base_url}/info",
                "healthCheckUrl": f"{self.base_url}/health",
                "vipAddress": self.vip_address or self.app,
                "secureVipAddress": self.vip_address or self.app,
                "dataCenterInfo": {"@class": DATA_CENTER_CLASS, "name": "MyOwn"},
                "leaseInfo": {
                    "renewalIntervalInSecs": self.lease_renewal_interval,
                    "durationInSecs": self.lease_duration,
                },
                "metadata": dict(self.metadata),
            }
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any], app: str = "") -> Instance:
        """Parse one instance record from a registry listing."""
        ip_address = data.get("ipAddr", "")
        port = _unwrap_port(data.get("port")) or 0
        home_page_url = data.get("homePageUrl") or ""
        if not home_page_url and ip_address and port:
            home_page_url = f"http://{ip_address}:{port}/"

        lease = data.get("leaseInfo") or {}
        metadata = data.get("metadata") or {}
        return cls(
            app=(data.get("app") or app).upper(),
            instance_id=data.get("instanceId") or data.get("hostName") or f"{ip_address}:{port}",
            ip_address=ip_address,
            port=port,
            home_page_url=home_page_url,
            host_name=data.get("hostName", ""),
            status=InstanceStatus.parse(data.get("status", "UNKNOWN")),
            vip_address=data.get("vipAddress", ""),
            lease_renewal_interval=int(lease.get("renewalIntervalInSecs", 30)),
            lease_duration=int(lease.get("durationInSecs", 90)),
            last_renewal_timestamp=lease.get("lastRenewalTimestamp"),
            metadata={str(k): str(v) for k, v in metadata.items() if not str(k).startswith("@")},
        )


@dataclass(frozen=True)
class Application:
    """A named group of instances providing one logical service."""

    name: str
    instances: tuple[Instance, ...] = ()

    @property
    def base_urls(self) -> list[str]:
        return [inst.base_url for inst in self.instances]


@dataclass(frozen=True)
class Applications:
    """Immutable snapshot of every application known to this client."""

    applications: tuple[Application, ...] = ()
    _index: dict[str, Application] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Frozen dataclass: build the lookup index once at construction
        object.__setattr__(self, "_index", {app.name.lower(): app for app in self.applications})

    def get(self, name: str) -> Application | None:
        """Case-insensitive lookup by application name."""
        return self._index.get(name.lower())

    @property
    def names(self) -> list[str]:
        return [app.name for app in self.applications]

    def __len__(self) -> int:
        return len(self.applications)

    def __iter__(self) -> Iterator[Application]:
        return iter(self.applications)


EMPTY_APPLICATIONS = Applications()


def _as_list(value: Any) -> list[Any]:
    """The registry encodes one-element collections as a bare object."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def parse_applications(document: Any) -> Applications:
    """Parse a `{"applications": {"application": [...]}}` registry listing."""
    if not isinstance(document, dict) or not isinstance(document.get("applications"), dict):
        raise RegistryAPIError("Registry listing has no 'applications' object")

    apps: list[Application] = []
    for raw_app in _as_list(document["applications"].get("application")):
        name = raw_app.get("name", "")
        if not name:
            continue
        seen: set[str] = set()
        instances: list[Instance] = []
        for raw_inst in _as_list(raw_app.get("instance")):
            inst = Instance.from_payload(raw_inst, app=name)
            if inst.instance_id in seen:
                continue
            seen.add(inst.instance_id)
            instances.append(inst)
        apps.append(Application(name=name, instances=tuple(instances)))
    return Applications(tuple(apps))
