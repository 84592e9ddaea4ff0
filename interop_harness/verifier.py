"""
Protocol round-trip verification.

After rendezvous, the dialer connects to the listener, sends the case's
probe on a fresh stream and reports what came back. The verifier watches
the dialer's events against two deadlines and compares the echo byte for
byte.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple
import logging

from .drivers.base import EnvironmentDriver, ParticipantEvent, ParticipantHandle, error_from_event
from .exceptions import (
    ApplicationMismatchError, DeadlineExceededError, ParticipantExitError,
)
from .matrix import MatrixCase
from .utils.constants import EventType, DEFAULT_CONNECT_TIMEOUT, DEFAULT_ECHO_TIMEOUT
from .utils.deadline import Deadline

logger = logging.getLogger(__name__)

# Participant-reported timings copied into the result
METRIC_FIELDS = {
    "handshake_plus_one_rtt_ms": "handshakePlusOneRTTMillis",
    "ping_rtt_ms": "pingRTTMillis",
}


@dataclass
class VerificationResult:
    """Successful round trip."""
    latency: float
    metrics: Dict[str, float] = field(default_factory=dict)


def _collect_metrics(event: ParticipantEvent, metrics: Dict[str, float]) -> None:
    for name, legacy in METRIC_FIELDS.items():
        value = event.get(name, event.get(legacy))
        if isinstance(value, (int, float)):
            metrics[name] = float(value)


class RoundTripVerifier:
    """Checks that a dialer completed connect, negotiate and echo."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        echo_timeout: float = DEFAULT_ECHO_TIMEOUT
    ):
        self.connect_timeout = connect_timeout
        self.echo_timeout = echo_timeout

    def _wait_for(
        self,
        accepted: Tuple[EventType, ...],
        stage: str,
        timeout: float,
        driver: EnvironmentDriver,
        handle: ParticipantHandle,
        deadline: Deadline,
        metrics: Dict[str, float]
    ) -> ParticipantEvent:
        """Wait for any of the accepted event types, failing on errors, exits and deadlines."""
        stage_deadline = Deadline(deadline.clamp(timeout))
        while True:
            remaining = stage_deadline.remaining()
            if remaining <= 0:
                expected = " or ".join(e.value for e in accepted)
                raise DeadlineExceededError(
                    f"No {expected} event from {driver.name} within {stage_deadline.seconds:.1f}s",
                    stage=stage, timeout_seconds=stage_deadline.seconds,
                )
            event = driver.next_event(handle, remaining)
            if event is None:
                continue
            if event.event in accepted:
                _collect_metrics(event, metrics)
                return event
            if event.event == EventType.ERROR:
                raise error_from_event(event, handle.role.value)
            if event.event == EventType.EXIT:
                raise ParticipantExitError(
                    f"{handle.role.value} {driver.name} exited during {stage} (code {event.get('code')})",
                    exit_code=event.get("code"), role=handle.role.value,
                )
            # ready/listening repeats and out-of-order events carry no verdict
            _collect_metrics(event, metrics)

    def verify(
        self,
        case: MatrixCase,
        driver: EnvironmentDriver,
        handle: ParticipantHandle,
        probe: bytes,
        deadline: Deadline
    ) -> VerificationResult:
        """
        Verify the round trip of one case from the dialer's events.

        Args:
            case: Case under test
            driver: Driver of the dialer environment
            handle: The dialer, already past rendezvous
            probe: Payload the dialer was told to send
            deadline: Case-wide deadline, clamps both stage deadlines

        Returns:
            VerificationResult with latency and participant-reported metrics

        Raises:
            ProtocolFailure: For a reported dial, security, muxer or stream error
            ApplicationMismatchError: If the echo differs from the probe
            DeadlineExceededError: If either stage runs out of time
            ParticipantExitError: If the dialer exits before the echo
        """
        metrics: Dict[str, float] = {}
        start = time.perf_counter()

        echo = self._wait_for((EventType.CONNECTED, EventType.ECHO), "connect", self.connect_timeout,
                              driver, handle, deadline, metrics)
        if echo.event == EventType.ECHO:
            logger.debug(f"{driver.name} reported echo before connected for {case.case_id}")
        else:
            echo = self._wait_for((EventType.ECHO,), "echo", self.echo_timeout,
                                  driver, handle, deadline, metrics)
        latency = time.perf_counter() - start

        payload = echo.get("payload")
        try:
            actual: Optional[bytes] = bytes.fromhex(payload) if isinstance(payload, str) else None
        except ValueError:
            actual = None
        if actual is None:
            raise ApplicationMismatchError(
                f"Echo payload is not hex: {str(payload)[:64]!r}", expected=probe, actual=b"",
            )
        if actual != probe:
            error = ApplicationMismatchError(
                f"Echo differs from probe for {case.case_id}", expected=probe, actual=actual,
            )
            error.message += (
                f" (first difference at byte {error.context['first_diff_offset']}, "
                f"expected {len(probe)} bytes, got {len(actual)})"
            )
            raise error

        logger.debug(f"Round trip verified for {case.case_id} in {latency * 1000:.1f}ms")
        return VerificationResult(latency=latency, metrics=metrics)
