"""Eureka service-discovery client: registration, cached lookups and load-balanced dispatch."""

from .balancer import RandomStrategy, RoundRobinStrategy, Strategy, StrategyRegistry
from .config import AppConfig, DispatchConfig, EurekaConfig, LoggingConfig, load_config
from .discovery_client import DiscoveryClient, RunState
from .dispatch import DispatchClient, DispatchRequest, DispatchResult
from .registry.models import Application, Applications, Instance, InstanceStatus

__version__ = "0.1.0"
__all__ = [
    "AppConfig",
    "Application",
    "Applications",
    "DiscoveryClient",
    "DispatchClient",
    "DispatchConfig",
    "DispatchRequest",
    "DispatchResult",
    "EurekaConfig",
    "Instance",
    "InstanceStatus",
    "LoggingConfig",
    "RandomStrategy",
    "RoundRobinStrategy",
    "RunState",
    "Strategy",
    "StrategyRegistry",
    "load_config",
]
