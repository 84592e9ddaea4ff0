"""
Integration tests running the loopback participant as real processes
against a real Redis server.

Set INTEROP_TEST_REDIS_URL to point at a server; the tests are skipped when
none is reachable.
"""

import os
import uuid
from pathlib import Path

import pytest
import redis
import yaml

from interop_harness.harness import InteropHarness
from interop_harness.utils.constants import Outcome, FailureCategory

REDIS_URL = os.environ.get("INTEROP_TEST_REDIS_URL", "redis://localhost:6379/15")
PARTICIPANT = Path(__file__).parent.parent.parent / "implementations" / "loopback" / "participant.py"


def redis_available() -> bool:
    try:
        redis.Redis.from_url(REDIS_URL, socket_connect_timeout=1).ping()
    except redis.RedisError:
        return False
    return True


pytestmark = [
    pytest.mark.redis,
    pytest.mark.slow,
    pytest.mark.skipif(not redis_available(), reason=f"Redis not reachable at {REDIS_URL}"),
]


@pytest.fixture
def namespace():
    name = f"itest-{uuid.uuid4().hex[:8]}"
    yield name
    client = redis.Redis.from_url(REDIS_URL)
    keys = client.keys(f"{name}:*")
    if keys:
        client.delete(*keys)


def run_loopback(tmp_path, namespace, fault="", **matrix):
    environment = {
        "name": "loopback",
        "kind": "native",
        "command": ["{python}", str(PARTICIPANT)],
        "transports": ["tcp"],
        "security": ["noise", "tls"],
        "muxers": ["yamux", "mplex"],
    }
    if fault:
        environment["env"] = {"LOOPBACK_FAULT": fault}
    path = tmp_path / "matrix.yaml"
    path.write_text(yaml.dump({
        "settings": {
            "parallel_tests": 2,
            "test_timeout": 30,
            "ready_timeout": 10,
            "rendezvous_timeout": 2,
            "connect_timeout": 10,
            "echo_timeout": 5,
            "stop_grace": 2,
            "poll_interval": 0.1,
            "max_attempts": 1,
        },
        "rendezvous": {"url": REDIS_URL, "namespace": namespace},
        "environments": [environment],
        "matrix": {
            "transports": matrix.get("transports", ["tcp"]),
            "security": matrix.get("security", ["noise"]),
            "muxers": matrix.get("muxers", ["yamux"]),
        },
    }))
    harness = InteropHarness(str(path))
    return harness.run(harness.cases())


def leftover_keys(namespace):
    return redis.Redis.from_url(REDIS_URL).keys(f"{namespace}:*")


class TestLoopbackParticipant:
    """Native x native round trips over real sockets."""

    def test_tcp_noise_yamux_passes(self, tmp_path, namespace):
        results = run_loopback(tmp_path, namespace)

        assert len(results) == 1
        result = results[0]
        assert result.outcome == Outcome.PASS, result.raw_log
        assert "handshake_plus_one_rtt_ms" in result.metrics
        assert "ping_rtt_ms" in result.metrics
        assert leftover_keys(namespace) == []

    def test_full_loopback_matrix(self, tmp_path, namespace):
        results = run_loopback(
            tmp_path, namespace,
            transports=["tcp", "quic"], security=["noise", "tls"], muxers=["yamux", "mplex"],
        )

        assert len(results) == 8
        ran = [r for r in results if r.case.transport.value == "tcp"]
        assert all(r.outcome == Outcome.PASS for r in ran), [r.message for r in ran]
        skipped = [r for r in results if r.case.transport.value == "quic"]
        assert all(r.failure_category == FailureCategory.UNSUPPORTED for r in skipped)
        assert leftover_keys(namespace) == []

    def test_corrupted_echo(self, tmp_path, namespace):
        result = run_loopback(tmp_path, namespace, fault="corrupt")[0]
        assert result.failure_category == FailureCategory.APPLICATION_MISMATCH
        assert "first difference at byte 0" in result.message

    def test_listener_never_publishes(self, tmp_path, namespace):
        result = run_loopback(tmp_path, namespace, fault="no-publish")[0]
        assert result.outcome == Outcome.TIMEOUT
        assert result.failure_category == FailureCategory.RENDEZVOUS_TIMEOUT
        assert leftover_keys(namespace) == []

    def test_muxer_rejected(self, tmp_path, namespace):
        result = run_loopback(tmp_path, namespace, fault="reject-muxer")[0]
        assert result.failure_category == FailureCategory.MUXER_NEGOTIATION

    def test_connection_refused(self, tmp_path, namespace):
        result = run_loopback(tmp_path, namespace, fault="refuse")[0]
        assert result.failure_category == FailureCategory.CONNECTION_REFUSED
