"""
Negative tests for the failure category taxonomy.

Every category a case can end in is triggered here through the executor
with scripted participants, and checked to be reported with the right
outcome.
"""

import pytest
from unittest.mock import Mock

from interop_harness.exceptions import (
    InteropHarnessError, ConfigurationError, RendezvousUnavailableError, InfrastructureError,
    RendezvousTimeoutError, ProtocolFailure, DialFailure, HandshakeFailure, ApplicationMismatchError,
    DeadlineExceededError, ParticipantExitError,
)
from interop_harness.executor import MatrixExecutor
from interop_harness.matrix import expand_matrix
from interop_harness.utils.constants import FailureCategory, Outcome, CATEGORY_SEVERITY


def listening(case, probe):
    return [{"event": "listening", "multiaddr": "/ip4/127.0.0.1/tcp/4001/p2p/QmListener"}]


def silent(case, probe):
    return [{"event": "ready"}]


def dialer_error(stage):
    def script(case, probe):
        return [{"event": "error", "stage": stage, "message": f"{stage} failed"}]
    return script


def dialer_echo(payload_hex):
    def script(case, probe):
        return [{"event": "connected"}, {"event": "echo", "payload": payload_hex(probe)}]
    return script


SCENARIOS = [
    ("rendezvous_timeout", dict(listener=silent), FailureCategory.RENDEZVOUS_TIMEOUT, Outcome.TIMEOUT),
    ("connection_refused", dict(dialer=dialer_error("dial")), FailureCategory.CONNECTION_REFUSED, Outcome.FAIL),
    ("security_handshake", dict(dialer=dialer_error("security")), FailureCategory.SECURITY_HANDSHAKE, Outcome.FAIL),
    ("muxer_negotiation", dict(dialer=dialer_error("muxer")), FailureCategory.MUXER_NEGOTIATION, Outcome.FAIL),
    ("stream_open", dict(dialer=dialer_error("stream")), FailureCategory.STREAM_OPEN, Outcome.FAIL),
    ("echo_reported", dict(dialer=dialer_error("echo")), FailureCategory.APPLICATION_MISMATCH, Outcome.FAIL),
    ("echo_differs", dict(dialer=dialer_echo(lambda probe: probe[::-1].hex())),
     FailureCategory.APPLICATION_MISMATCH, Outcome.FAIL),
    ("echo_not_hex", dict(dialer=dialer_echo(lambda probe: "not-hex")),
     FailureCategory.APPLICATION_MISMATCH, Outcome.FAIL),
    ("no_connect", dict(dialer=lambda case, probe: [{"event": "ready"}]), FailureCategory.DEADLINE_EXCEEDED, Outcome.TIMEOUT),
    ("dialer_exit", dict(dialer=lambda case, probe: [{"event": "exit", "code": 1}]),
     FailureCategory.PARTICIPANT_EXIT, Outcome.FAIL),
    ("listener_exit", dict(listener=lambda case, probe: [{"event": "exit", "code": 2}]),
     FailureCategory.PARTICIPANT_EXIT, Outcome.FAIL),
    ("listener_error", dict(listener=dialer_error("security")), FailureCategory.SECURITY_HANDSHAKE, Outcome.FAIL),
    ("unknown_stage", dict(dialer=dialer_error("teleport")), FailureCategory.PROTOCOL_ERROR, Outcome.FAIL),
    ("infrastructure", dict(start_failures=100), FailureCategory.INFRASTRUCTURE, Outcome.FAIL),
]


class TestFailureCategoryCoverage:
    """Each failure category can be triggered and is reported."""

    @pytest.mark.parametrize(
        "driver_kwargs,category,outcome",
        [s[1:] for s in SCENARIOS],
        ids=[s[0] for s in SCENARIOS],
    )
    def test_scenario(self, make_config, make_driver, store, redis_client, driver_kwargs, category, outcome):
        config = make_config()
        kwargs = {"listener": listening, **driver_kwargs}
        driver = make_driver(config, "alpha", **kwargs)
        executor = MatrixExecutor(config, {"alpha": driver}, store)

        result = executor.run(expand_matrix(config))[0]

        assert result.failure_category == category
        assert result.outcome == outcome
        assert result.is_failure
        assert result.message
        # Keys never outlive a case, whatever the outcome
        assert redis_client.keys("test:*") == []

    def test_internal_error(self, make_config, make_driver, store):
        config = make_config()
        verifier = Mock()
        verifier.verify.side_effect = KeyError("surprise")
        executor = MatrixExecutor(config, {"alpha": make_driver(config, "alpha")}, store, verifier=verifier)

        result = executor.run(expand_matrix(config))[0]

        assert result.failure_category == FailureCategory.INTERNAL_ERROR
        assert result.outcome == Outcome.FAIL

    def test_unsupported_and_excluded_are_skips(self, make_config):
        config = make_config(matrix={
            "transports": ["tcp", "quic"],
            "security": ["noise"],
            "muxers": ["yamux"],
            "pairings": [{"dialer": "alpha", "listener": "beta"}],
            "exclude": [{"transport": "tcp", "reason": "flaky upstream"}],
        })
        executor = MatrixExecutor(config, {}, store=None)

        excluded, unsupported = executor.run(expand_matrix(config))

        assert excluded.failure_category == FailureCategory.EXCLUDED
        assert excluded.message == "flaky upstream"
        assert unsupported.failure_category == FailureCategory.UNSUPPORTED
        assert not excluded.is_failure and not unsupported.is_failure


class TestExceptionTaxonomy:
    """Exception classes carry their category, outcome and retry policy."""

    @pytest.mark.parametrize("error,category,outcome,retryable", [
        (ConfigurationError("bad", field="settings"), FailureCategory.CONFIGURATION, Outcome.FAIL, False),
        (RendezvousUnavailableError("down"), FailureCategory.INFRASTRUCTURE, Outcome.FAIL, False),
        (InfrastructureError("spawn"), FailureCategory.INFRASTRUCTURE, Outcome.FAIL, True),
        (RendezvousTimeoutError("late"), FailureCategory.RENDEZVOUS_TIMEOUT, Outcome.TIMEOUT, False),
        (ProtocolFailure("odd", stage="teleport"), FailureCategory.PROTOCOL_ERROR, Outcome.FAIL, False),
        (DialFailure("refused"), FailureCategory.CONNECTION_REFUSED, Outcome.FAIL, False),
        (HandshakeFailure("noise", category=FailureCategory.MUXER_NEGOTIATION),
         FailureCategory.MUXER_NEGOTIATION, Outcome.FAIL, False),
        (ApplicationMismatchError("diff", expected=b"ab", actual=b"ac"),
         FailureCategory.APPLICATION_MISMATCH, Outcome.FAIL, False),
        (DeadlineExceededError("slow", stage="echo"), FailureCategory.DEADLINE_EXCEEDED, Outcome.TIMEOUT, False),
        (ParticipantExitError("gone", exit_code=9), FailureCategory.PARTICIPANT_EXIT, Outcome.FAIL, False),
    ])
    def test_classification(self, error, category, outcome, retryable):
        assert isinstance(error, InteropHarnessError)
        assert error.category == category
        assert error.outcome == outcome
        assert error.retryable is retryable
        assert str(error).startswith(f"[{category.value}]")

    def test_mismatch_context(self):
        error = ApplicationMismatchError("diff", expected=b"abcd", actual=b"abXd")
        assert error.context == {"expected_len": 4, "actual_len": 4, "first_diff_offset": 2, "stage": "echo"}

    def test_category_override_does_not_leak_to_class(self):
        HandshakeFailure("x", category=FailureCategory.STREAM_OPEN)
        assert HandshakeFailure("y").category == FailureCategory.SECURITY_HANDSHAKE

    def test_mismatch_is_most_severe(self):
        assert CATEGORY_SEVERITY[FailureCategory.APPLICATION_MISMATCH] == max(CATEGORY_SEVERITY.values())
