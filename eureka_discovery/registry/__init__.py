"""Registry package: transport Protocol and public exports."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import Applications, Instance, InstanceStatus


@runtime_checkable
class RegistryTransport(Protocol):
    """Protocol that every registry transport must satisfy.

    Each call targets one resolved endpoint URL ending in '/'.
    """

    def register(self, endpoint: str, app: str, instance: Instance) -> None:
        ...

    def unregister(self, endpoint: str, app: str, instance_id: str) -> None:
        ...

    def heartbeat(self, endpoint: str, app: str, instance_id: str, status: InstanceStatus = ...) -> None:
        """Raise InstanceNotFoundError when the registry does not know the instance."""
        ...

    def refresh(self, endpoint: str) -> Applications:
        ...
