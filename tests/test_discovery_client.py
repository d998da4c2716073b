"""Tests for the discovery client lifecycle."""

import random
import threading
import time
from collections import Counter
from unittest.mock import MagicMock, patch

from eureka_discovery.config import EurekaConfig
from eureka_discovery.discovery_client import DiscoveryClient, RunState
from eureka_discovery.exceptions import InstanceNotFoundError, RegistryAPIError
from eureka_discovery.registry.models import EMPTY_APPLICATIONS, Application, Applications, Instance

ZONE = "http://r1:8761/eureka/"


class RecordingEvent(threading.Event):
    """Stop event whose wait() returns immediately and records the requested timeout.

    After ``max_waits`` waits the event sets itself so loops terminate.
    """

    def __init__(self, max_waits: int | None = None):
        super().__init__()
        self.waits: list[float | None] = []
        self._max_waits = max_waits

    def wait(self, timeout=None):
        self.waits.append(timeout)
        if self._max_waits is not None and len(self.waits) >= self._max_waits:
            self.set()
        return self.is_set()


def _config(**overrides):
    values = {"default_zone": ZONE, "app": "orderservice", "port": 8080, "ip_address": "10.0.0.5"}
    values.update(overrides)
    return EurekaConfig(**values)


def _snapshot(*names, instances=1):
    apps = []
    for name in names:
        insts = tuple(
            Instance(app=name, instance_id=f"{name}-{i}", ip_address=f"10.0.0.{i}", port=8080,
                     home_page_url=f"http://10.0.0.{i}:8080/")
            for i in range(1, instances + 1)
        )
        apps.append(Application(name=name, instances=insts))
    return Applications(tuple(apps))


def _client(transport=None, stop_event=None, **config_overrides):
    return DiscoveryClient(
        _config(**config_overrides),
        transport or MagicMock(),
        rng=random.Random(1),
        stop_event=stop_event or RecordingEvent(),
    )


class TestConstruction:
    def test_initial_state(self):
        client = _client()
        assert client.state is RunState.STOPPED
        assert client.applications is EMPTY_APPLICATIONS
        assert client.instance.instance_id == "10.0.0.5:8080"


class TestEndpointSelection:
    def test_single_endpoint_always_used(self):
        client = _client()
        assert {client.pick_endpoint() for _ in range(20)} == {ZONE}

    def test_all_endpoints_are_candidates(self):
        client = _client(default_zone="http://r1/eureka,http://r2/eureka,http://r3/eureka")
        counts = Counter(client.pick_endpoint() for _ in range(3000))
        # The last endpoint is selected too
        assert set(counts) == {"http://r1/eureka/", "http://r2/eureka/", "http://r3/eureka/"}
        for count in counts.values():
            assert 850 <= count <= 1150


class TestRegistration:
    def test_retries_with_backoff_then_starts_tasks(self):
        transport = MagicMock()
        transport.register.side_effect = [RegistryAPIError("unavailable", status_code=503)] * 3 + [None]
        stop = RecordingEvent()
        client = _client(transport, stop)

        def assert_registered():
            assert transport.register.call_count == 4
            assert client.state is RunState.RUNNING

        with patch.object(client, "_start_background_tasks", side_effect=assert_registered) as start_tasks:
            assert client.start() is True

        start_tasks.assert_called_once()
        assert stop.waits == [5, 5, 5]
        endpoint, app, instance = transport.register.call_args[0]
        assert endpoint == ZONE
        assert app == "orderservice"
        assert instance is client.instance

    def test_custom_backoff(self):
        transport = MagicMock()
        transport.register.side_effect = [RegistryAPIError("down"), None]
        stop = RecordingEvent()
        client = _client(transport, stop, registration_backoff_seconds=2)
        with patch.object(client, "_start_background_tasks"):
            client.start()
        assert stop.waits == [2]

    def test_shutdown_during_registration_returns_false(self):
        transport = MagicMock()
        transport.register.side_effect = RegistryAPIError("down")
        client = _client(transport, RecordingEvent(max_waits=2))
        with patch.object(client, "_start_background_tasks") as start_tasks:
            assert client.start() is False
        start_tasks.assert_not_called()
        assert transport.register.call_count == 2
        assert client.state is RunState.STOPPED

    def test_shutdown_while_register_call_in_flight(self):
        transport = MagicMock()
        client = _client(transport, threading.Event())

        def register_racing_shutdown(endpoint, app, instance):
            assert client.shutdown() is True

        transport.register.side_effect = register_racing_shutdown
        with patch.object(client, "_start_background_tasks") as start_tasks:
            assert client.start() is False

        start_tasks.assert_not_called()
        assert client.state is RunState.STOPPED
        assert client.wait_stopped(0) is True
        # The registration that completed after shutdown is withdrawn
        transport.unregister.assert_called_once_with(ZONE, "orderservice", "10.0.0.5:8080")

    def test_start_is_idempotent_while_running(self):
        transport = MagicMock()
        client = _client(transport)
        with patch.object(client, "_start_background_tasks") as start_tasks:
            client.start()
            client.start()
        assert transport.register.call_count == 1
        start_tasks.assert_called_once()


class TestHeartbeat:
    def test_success(self):
        transport = MagicMock()
        client = _client(transport)
        assert client.heartbeat_once() is True
        transport.heartbeat.assert_called_once_with(ZONE, "orderservice", "10.0.0.5:8080")
        transport.register.assert_not_called()

    def test_not_found_reregisters_once(self):
        transport = MagicMock()
        transport.heartbeat.side_effect = InstanceNotFoundError()
        client = _client(transport)
        assert client.heartbeat_once() is False
        transport.register.assert_called_once()

    def test_not_found_with_failed_reregistration_is_not_retried(self, caplog):
        transport = MagicMock()
        transport.heartbeat.side_effect = InstanceNotFoundError()
        transport.register.side_effect = RegistryAPIError("down", status_code=503)
        client = _client(transport)
        assert client.heartbeat_once() is False
        transport.register.assert_called_once()
        assert "Registration failed" in caplog.text

    def test_other_failure_does_not_reregister(self, caplog):
        transport = MagicMock()
        transport.heartbeat.side_effect = RegistryAPIError("boom", status_code=500)
        client = _client(transport)
        assert client.heartbeat_once() is False
        transport.register.assert_not_called()
        assert "Heartbeat failed" in caplog.text

    def test_loop_registers_before_next_heartbeat(self):
        transport = MagicMock()
        transport.heartbeat.side_effect = [InstanceNotFoundError(), None, None]
        stop = RecordingEvent(max_waits=3)
        client = _client(transport, stop)

        client._periodic(client.heartbeat_once, 30)

        names = [c[0] for c in transport.mock_calls]
        assert names == ["heartbeat", "register", "heartbeat", "heartbeat"]
        assert stop.waits == [30, 30, 30]


class TestRefresh:
    def test_success_replaces_snapshot(self):
        transport = MagicMock()
        snapshot = _snapshot("ORDERSERVICE")
        transport.refresh.return_value = snapshot
        client = _client(transport)
        assert client.refresh_once() is True
        assert client.applications is snapshot
        assert client.get_application("orderservice").name == "ORDERSERVICE"

    def test_failure_keeps_previous_snapshot(self):
        transport = MagicMock()
        snapshot = _snapshot("ORDERSERVICE")
        transport.refresh.side_effect = [snapshot, RegistryAPIError("down", status_code=503)]
        client = _client(transport)
        client.refresh_once()
        assert client.refresh_once() is False
        assert client.applications is snapshot

    def test_readers_never_see_mixed_snapshot(self):
        small, large = _snapshot("A", "B", instances=1), _snapshot("A", "B", instances=3)
        transport = MagicMock()
        transport.refresh.side_effect = [small, large] * 200
        client = _client(transport)
        client.refresh_once()
        mismatches = []

        def reader():
            for _ in range(500):
                apps = client.applications
                if len(apps.get("A").instances) != len(apps.get("B").instances):
                    mismatches.append(apps)

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for t in readers:
            t.start()
        for _ in range(399):
            client.refresh_once()
        for t in readers:
            t.join()
        assert mismatches == []


class TestPeriodic:
    def test_unexpected_exception_does_not_stop_loop(self, caplog):
        action = MagicMock(side_effect=[RuntimeError("bug"), True, True])
        stop = RecordingEvent(max_waits=3)
        client = _client(stop_event=stop)
        client._periodic(action, 15)
        assert action.call_count == 3
        assert "failed" in caplog.text

    def test_does_not_run_when_already_stopped(self):
        action = MagicMock()
        stop = RecordingEvent()
        stop.set()
        _client(stop_event=stop)._periodic(action, 15)
        action.assert_not_called()


class TestShutdown:
    def test_unregisters_once(self):
        transport = MagicMock()
        client = _client(transport)
        with patch.object(client, "_start_background_tasks"):
            client.start()
        assert client.shutdown() is True
        assert client.shutdown() is False
        transport.unregister.assert_called_once_with(ZONE, "orderservice", "10.0.0.5:8080")
        assert client.state is RunState.STOPPED
        assert client.wait_stopped(0)

    def test_unregister_failure_is_not_retried(self, caplog):
        transport = MagicMock()
        transport.unregister.side_effect = RegistryAPIError("down", status_code=503)
        client = _client(transport)
        with patch.object(client, "_start_background_tasks"):
            client.start()
        assert client.shutdown() is True
        transport.unregister.assert_called_once()
        assert "Unregister failed" in caplog.text
        assert client.state is RunState.STOPPED

    def test_skips_unregister_when_never_registered(self):
        transport = MagicMock()
        client = _client(transport)
        client.shutdown()
        transport.unregister.assert_not_called()

    def test_start_after_shutdown_is_refused(self):
        transport = MagicMock()
        client = _client(transport)
        client.shutdown()
        assert client.start() is False
        transport.register.assert_not_called()


class TestBackgroundThreads:
    """Runs the real threads with long intervals; shutdown wakes them immediately."""

    def _threaded_client(self, transport, on_shutdown=None):
        return DiscoveryClient(_config(), transport, on_shutdown=on_shutdown)

    def test_shutdown_stops_threads_and_unregisters(self):
        transport = MagicMock()
        transport.refresh.return_value = _snapshot("ORDERSERVICE")
        client = self._threaded_client(transport)
        assert client.start() is True
        assert client.state is RunState.RUNNING

        assert client.shutdown() is True
        assert all(not t.is_alive() for t in client._threads)
        transport.unregister.assert_called_once()
        assert client.state is RunState.STOPPED

    def test_shutdown_request_runs_watch_and_hook(self):
        transport = MagicMock()
        transport.refresh.return_value = _snapshot("ORDERSERVICE")
        hook = MagicMock()
        client = self._threaded_client(transport, on_shutdown=hook)
        client.start()

        client.request_shutdown()

        assert client.wait_stopped(timeout=5)
        for t in client._threads:
            t.join(timeout=5)
        transport.unregister.assert_called_once()
        hook.assert_called_once_with()

    def test_direct_shutdown_skips_hook(self):
        transport = MagicMock()
        hook = MagicMock()
        client = self._threaded_client(transport, on_shutdown=hook)
        client.start()
        client.shutdown()
        hook.assert_not_called()


class TestSignals:
    @patch("eureka_discovery.discovery_client.signal.signal")
    def test_handlers_request_shutdown(self, mock_signal):
        import signal as signal_module

        client = _client()
        client.install_signal_handlers()
        registered = {c[0][0]: c[0][1] for c in mock_signal.call_args_list}
        assert set(registered) == {signal_module.SIGTERM, signal_module.SIGINT}

        registered[signal_module.SIGTERM](signal_module.SIGTERM, None)
        assert client._shutdown_requested.is_set()
        assert client._stop.is_set()

    @patch("eureka_discovery.discovery_client.signal.signal")
    def test_run_returns_after_shutdown_request(self, mock_signal):
        transport = MagicMock()
        client = DiscoveryClient(_config(), transport)

        def stop_once_running():
            while client.state is not RunState.RUNNING:
                time.sleep(0.01)
            client.request_shutdown()

        stopper = threading.Thread(target=stop_once_running)
        stopper.start()
        client.run()
        stopper.join()
        transport.unregister.assert_called_once()
        assert client.state is RunState.STOPPED

    @patch("eureka_discovery.discovery_client.signal.signal")
    def test_run_with_shutdown_before_registration(self, mock_signal):
        transport = MagicMock()
        transport.register.side_effect = RegistryAPIError("down")
        client = _client(transport, RecordingEvent(max_waits=1))
        client.run()
        transport.unregister.assert_not_called()
        assert client.state is RunState.STOPPED
