"""
Shared fixtures: an in-memory rendezvous store, a config factory and a
scripted driver that replays participant events without spawning anything.
"""

import json
import threading
import time
from collections import deque
from typing import Callable, List, Optional

import fakeredis
import pytest

from interop_harness.config import HarnessConfig
from interop_harness.drivers.base import EnvironmentDriver, ParticipantEvent, ParticipantHandle
from interop_harness.exceptions import InfrastructureError
from interop_harness.rendezvous import RendezvousStore
from interop_harness.utils.constants import Role, EventType

FAST_SETTINGS = {
    "parallel_tests": 2,
    "test_timeout": 5,
    "ready_timeout": 1,
    "rendezvous_timeout": 0.5,
    "connect_timeout": 1,
    "echo_timeout": 0.5,
    "stop_grace": 0.5,
    "poll_interval": 0.05,
    "max_attempts": 2,
    "probe_size": 16,
}

ENVIRONMENTS = [
    {
        "name": "alpha",
        "kind": "native",
        "command": ["{python}", "-c", "pass"],
        "transports": ["tcp", "quic"],
        "security": ["noise", "tls"],
        "muxers": ["yamux", "mplex"],
    },
    {
        "name": "beta",
        "kind": "native",
        "command": ["{python}", "-c", "pass"],
        "transports": ["tcp"],
        "security": ["noise"],
        "muxers": ["yamux"],
    },
    {
        "name": "page",
        "kind": "browser",
        "transports": ["websocket", "webrtc"],
        "security": ["noise"],
        "muxers": ["yamux"],
    },
]


def listener_script(case, probe) -> List[dict]:
    return [{"event": "listening", "multiaddr": f"/ip4/127.0.0.1/tcp/{4000 + case.index}/p2p/QmFake{case.index}"}]


def dialer_script(case, probe) -> List[dict]:
    return [
        {"event": "connected", "handshake_plus_one_rtt_ms": 1.5},
        {"event": "echo", "payload": probe.hex(), "ping_rtt_ms": 0.4},
    ]


def to_event(data: dict) -> ParticipantEvent:
    return ParticipantEvent(event=EventType(data["event"]), data=data, raw=json.dumps(data))


class FakeDriver(EnvironmentDriver):
    """Replays a scripted list of events per role."""

    def __init__(
        self,
        environment,
        settings,
        listener: Callable = listener_script,
        dialer: Callable = dialer_script,
        start_failures: int = 0,
        start_delay: float = 0.0,
        stop_error: Optional[Exception] = None
    ):
        super().__init__(environment, settings)
        self.listener = listener
        self.dialer = dialer
        self.start_failures = start_failures
        self.start_delay = start_delay
        self.stop_error = stop_error
        self.started = []
        self.stopped = []
        self.delivered = []
        self.live_listeners = 0
        self.max_live_listeners = 0
        self._lock = threading.Lock()

    def start(self, role, case, context):
        with self._lock:
            if self.start_failures > 0:
                self.start_failures -= 1
                raise InfrastructureError(f"{self.name} could not start", environment=self.name, role=role.value)
            self.started.append((role, case.case_id))
            if role == Role.LISTENER:
                self.live_listeners += 1
                self.max_live_listeners = max(self.max_live_listeners, self.live_listeners)
        if self.start_delay:
            time.sleep(self.start_delay)
        script = self.listener if role == Role.LISTENER else self.dialer
        handle = ParticipantHandle(environment=self.name, role=role, case=case, context=context)
        handle.resource = deque(to_event(e) for e in script(case, context.probe))
        return handle

    def deliver_rendezvous(self, handle, record):
        with self._lock:
            self.delivered.append((handle.case.case_id, record))

    def stop(self, handle):
        if handle.stopped:
            return
        handle.stopped = True
        with self._lock:
            self.stopped.append((handle.role, handle.case.case_id))
            if handle.role == Role.LISTENER:
                self.live_listeners -= 1
        if self.stop_error is not None:
            raise self.stop_error

    def _read_event(self, handle, timeout):
        if handle.resource:
            event = handle.resource.popleft()
            handle.append_log(event.raw)
            return event
        time.sleep(min(timeout, 0.01))
        return None


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def store(redis_client):
    return RendezvousStore(
        redis_client, namespace="test", run_id="run1", ttl=60, poll_interval=0.05,
        url="redis://localhost:6379/0",
    )


@pytest.fixture
def make_config():
    """Factory for validated configurations with fast timeouts."""
    def _make(environments=None, matrix=None, **settings) -> HarnessConfig:
        return HarnessConfig.model_validate({
            "settings": {**FAST_SETTINGS, **settings},
            "environments": environments or ENVIRONMENTS,
            "matrix": matrix or {
                "transports": ["tcp"],
                "security": ["noise"],
                "muxers": ["yamux"],
                "pairings": [{"dialer": "alpha", "listener": "alpha"}],
            },
        })
    return _make


@pytest.fixture
def make_driver():
    """Factory for a FakeDriver bound to one environment of a config."""
    def _make(config: HarnessConfig, name: str, **kwargs) -> FakeDriver:
        return FakeDriver(config.get_environment(name), config.settings, **kwargs)
    return _make


@pytest.fixture
def fake_create_driver():
    """Stand-in for ``create_driver`` that builds scripted drivers."""
    def _factory(**kwargs):
        def create(environment, settings, browser=None, asset_url=None):
            return FakeDriver(environment, settings, **kwargs)
        return create
    return _factory
