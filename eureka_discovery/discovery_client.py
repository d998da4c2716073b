"""Registration lifecycle: register, heartbeat, refresh and graceful shutdown."""

from __future__ import annotations

import logging
import random
import signal
import socket
import threading
import time
from enum import Enum
from types import FrameType
from typing import Callable

from .config import EurekaConfig
from .exceptions import ConfigError, InstanceNotFoundError, RegistryAPIError
from .registry import RegistryTransport
from .registry.models import EMPTY_APPLICATIONS, Application, Applications, Instance
from .registry.registry_client import RegistryClient

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


def local_ip_address() -> str:
    """Return the first non-loopback IPv4 address of this host."""
    ip = ""
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            # No packet is sent; connect() on UDP only selects the outbound interface
            sock.connect(("10.255.255.255", 1))
            ip = sock.getsockname()[0]
        except OSError:
            pass
    if not ip or ip.startswith("127."):
        try:
            ip = socket.gethostbyname(socket.gethostname())
        except OSError:
            ip = ""
    if not ip or ip.startswith("127."):
        raise ConfigError("Unable to determine a non-loopback IPv4 address; set eureka.ip_address")
    return ip


class DiscoveryClient:
    """Keeps this process registered and holds the cached view of all applications.

    Lifecycle: start() registers (retrying forever with a fixed backoff), then
    runs heartbeat, refresh and shutdown-watch threads until shutdown(). Every
    wait goes through ``stop_event`` so callers can inject an event whose
    wait() returns immediately.
    """

    def __init__(
        self,
        config: EurekaConfig,
        transport: RegistryTransport | None = None,
        *,
        instance: Instance | None = None,
        rng: random.Random | None = None,
        stop_event: threading.Event | None = None,
        on_shutdown: Callable[[], None] | None = None,
    ):
        self._config = config
        self._endpoints = config.endpoints
        if not self._endpoints:
            raise ConfigError("At least one registry endpoint is required")
        self._transport: RegistryTransport = transport or RegistryClient(config)
        self._rng = rng or random.Random()
        self.instance = instance or Instance.for_local(config, config.ip_address or local_ip_address())
        self._on_shutdown = on_shutdown

        self._stop = stop_event or threading.Event()
        self._shutdown_requested = threading.Event()
        self._stopped = threading.Event()

        self._state_lock = threading.RLock()
        self._state = RunState.STOPPED
        self._stopping = False
        self._registered = False
        self._threads: list[threading.Thread] = []

        self._cache_lock = threading.Lock()
        self._applications: Applications = EMPTY_APPLICATIONS

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    @property
    def app(self) -> str:
        return self._config.app

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    @property
    def applications(self) -> Applications:
        """The current snapshot. Snapshots are immutable; refresh swaps in a new one."""
        with self._cache_lock:
            return self._applications

    def get_application(self, name: str) -> Application | None:
        return self.applications.get(name)

    def pick_endpoint(self) -> str:
        """Pick a registry endpoint uniformly at random for one call."""
        if len(self._endpoints) == 1:
            return self._endpoints[0]
        return self._rng.choice(self._endpoints)

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> bool:
        """Register, then start the background threads.

        Blocks until registration succeeds. Returns False if shutdown was
        requested before the background threads could start.
        """
        with self._state_lock:
            if self._state is RunState.RUNNING:
                return True
            if self._stopping:
                return False

        if not self._register_until_success():
            logger.info("Shutdown requested before registration completed")
            return False

        with self._state_lock:
            # shutdown() may have run while the last registration call was in flight
            aborted = self._stopping
            if not aborted:
                self._state = RunState.RUNNING
                self._start_background_tasks()
        if aborted:
            logger.info("Shutdown requested during registration, not starting background tasks")
            if self._registered:
                self._unregister_once()
            return False
        return True

    def run(self) -> None:
        """Start, then block until a shutdown signal has been handled."""
        self.install_signal_handlers()
        if not self.start():
            self.shutdown()
            return
        self._stopped.wait()

    def request_shutdown(self) -> None:
        """Ask the shutdown-watch thread to deregister and stop. Safe from signal handlers."""
        self._stop.set()
        self._shutdown_requested.set()

    def shutdown(self) -> bool:
        """Stop background tasks and deregister once (best effort).

        Returns True if this call performed the shutdown, False if it had
        already happened.
        """
        with self._state_lock:
            if self._stopping:
                return False
            self._stopping = True

        logger.info("Shutting down discovery client", extra={"app": self.app})
        self._stop.set()
        self._shutdown_requested.set()
        self._join_background_tasks()

        if self._registered:
            self._unregister_once()
        else:
            logger.info("Instance was never registered, skipping unregister")

        with self._state_lock:
            self._state = RunState.STOPPED
        self._stopped.set()
        return True

    def wait_stopped(self, timeout: float | None = None) -> bool:
        return self._stopped.wait(timeout)

    def install_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to request_shutdown(). Main thread only."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, deregistering", sig_name)
        self.request_shutdown()

    # ── Single steps ────────────────────────────────────────────────

    def register_once(self) -> bool:
        """One registration attempt against one endpoint. Failure is logged."""
        endpoint = self.pick_endpoint()
        try:
            self._transport.register(endpoint, self.app, self.instance)
        except RegistryAPIError as exc:
            logger.warning(
                "Registration failed: %s", exc,
                extra={"endpoint": endpoint, "status_code": exc.status_code},
            )
            return False
        self._registered = True
        logger.info(
            "Registered %s as %s", self.app, self.instance.instance_id,
            extra={"endpoint": endpoint, "instance_id": self.instance.instance_id},
        )
        return True

    def heartbeat_once(self) -> bool:
        """Renew the lease. A 404 triggers exactly one re-registration attempt."""
        endpoint = self.pick_endpoint()
        try:
            self._transport.heartbeat(endpoint, self.app, self.instance.instance_id)
        except InstanceNotFoundError:
            logger.warning(
                "Registry does not know this instance, re-registering",
                extra={"endpoint": endpoint, "instance_id": self.instance.instance_id},
            )
            self.register_once()
            return False
        except RegistryAPIError as exc:
            logger.warning(
                "Heartbeat failed: %s", exc,
                extra={"endpoint": endpoint, "status_code": exc.status_code},
            )
            return False
        logger.debug("Heartbeat ok", extra={"endpoint": endpoint})
        return True

    def refresh_once(self) -> bool:
        """Fetch the full registry listing and swap it in. The cache survives failures."""
        endpoint = self.pick_endpoint()
        start = time.monotonic()
        try:
            applications = self._transport.refresh(endpoint)
        except RegistryAPIError as exc:
            logger.warning(
                "Registry refresh failed, keeping %d cached applications: %s",
                len(self.applications), exc,
                extra={"endpoint": endpoint, "status_code": exc.status_code},
            )
            return False

        # TODO: fetch apps/delta once a full snapshot is cached instead of the whole listing
        with self._cache_lock:
            self._applications = applications
        logger.debug(
            "Registry refreshed",
            extra={
                "endpoint": endpoint,
                "applications": len(applications),
                "elapsed_seconds": round(time.monotonic() - start, 3),
            },
        )
        return True

    # ── Background tasks ────────────────────────────────────────────

    def _register_until_success(self) -> bool:
        backoff = self._config.registration_backoff_seconds
        attempts = 0
        while not self._stop.is_set():
            attempts += 1
            if self.register_once():
                return True
            logger.warning("Registration attempt %d failed, retrying in %ds", attempts, backoff)
            if self._stop.wait(backoff):
                break
        return False

    def _unregister_once(self) -> None:
        endpoint = self.pick_endpoint()
        try:
            self._transport.unregister(endpoint, self.app, self.instance.instance_id)
        except RegistryAPIError as exc:
            logger.error(
                "Unregister failed: %s", exc,
                extra={"endpoint": endpoint, "status_code": exc.status_code},
            )
            return
        self._registered = False
        logger.info("Unregistered %s", self.instance.instance_id, extra={"endpoint": endpoint})

    def _start_background_tasks(self) -> None:
        tasks = [
            ("eureka-heartbeat", self._periodic, (self.heartbeat_once, self._config.renewal_interval_seconds)),
            ("eureka-refresh", self._periodic, (self.refresh_once, self._config.registry_fetch_interval_seconds)),
            ("eureka-shutdown-watch", self._watch_shutdown, ()),
        ]
        for name, target, args in tasks:
            thread = threading.Thread(target=target, args=args, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        logger.info(
            "Background tasks started (heartbeat every %ds, refresh every %ds)",
            self._config.renewal_interval_seconds,
            self._config.registry_fetch_interval_seconds,
        )

    def _join_background_tasks(self) -> None:
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()

    def _periodic(self, action: Callable[[], bool], interval: int) -> None:
        """Run action, then wait interval seconds, until stopped."""
        while not self._stop.is_set():
            try:
                action()
            except Exception:
                logger.exception("Background task %s failed", threading.current_thread().name)
            if self._stop.wait(interval):
                break

    def _watch_shutdown(self) -> None:
        self._shutdown_requested.wait()
        if self.shutdown() and self._on_shutdown is not None:
            self._on_shutdown()
