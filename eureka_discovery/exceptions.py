"""Custom exception hierarchy for the discovery client."""


class DiscoveryError(Exception):
    """Base exception for all client errors."""


class ConfigError(DiscoveryError):
    """Invalid or missing configuration."""


class UnknownStrategyError(ConfigError):
    """A load-balancing strategy name that is not registered."""

    def __init__(self, name: str, known: list[str] | None = None):
        known_str = ", ".join(sorted(known)) if known else "none"
        super().__init__(f"Unknown load-balancing strategy '{name}' (known: {known_str})")
        self.name = name


class InvalidLogicalURLError(ConfigError):
    """A dispatch URL that does not name an application."""


class RegistryAPIError(DiscoveryError):
    """Error communicating with the registry server."""

    def __init__(self, message: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class InstanceNotFoundError(RegistryAPIError):
    """HTTP 404 on heartbeat: the registry no longer knows this instance."""

    def __init__(self, message: str = "Instance not found in registry", response_body: str | None = None):
        super().__init__(message, status_code=404, response_body=response_body)


class EmptyCandidateSetError(DiscoveryError):
    """The load balancer was asked to pick from zero URLs."""


class DispatchError(DiscoveryError):
    """An outbound call to a discovered instance failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ApplicationNotKnownError(DispatchError):
    """The application is absent from the cached registry or has no instances."""

    def __init__(self, app: str):
        super().__init__(f"Application not known: {app}")
        self.app = app
