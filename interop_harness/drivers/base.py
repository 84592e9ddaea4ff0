"""
Base classes and interfaces for participant environments.
"""

import json
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional
import logging

from ..config import EnvironmentConfig, SettingsConfig
from ..exceptions import (
    InteropHarnessError, InfrastructureError, ParticipantExitError, ProtocolFailure,
    DialFailure, HandshakeFailure, ApplicationMismatchError,
)
from ..matrix import MatrixCase
from ..rendezvous import RendezvousStore, RendezvousRecord
from ..utils.constants import Role, EventType, FailureCategory, STAGE_TO_CATEGORY
from ..utils.deadline import Deadline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParticipantEvent:
    """One structured line emitted by a participant."""
    event: EventType
    data: Dict[str, Any]
    raw: str

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def parse_event_line(line: str) -> Optional[ParticipantEvent]:
    """
    Parse a participant output line.

    Returns:
        The event, or None for lines that are plain log output
    """
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict) or "event" not in data:
        return None
    try:
        event_type = EventType(data["event"])
    except ValueError:
        return None
    return ParticipantEvent(event=event_type, data=data, raw=line)


def error_from_event(event: ParticipantEvent, role: str) -> InteropHarnessError:
    """Map an ``error`` event onto the exception for the stage that broke."""
    stage = event.get("stage") or "unknown"
    message = f"{role} reported {stage} error: {event.get('message', 'no message')}"
    category = STAGE_TO_CATEGORY.get(stage)
    if category == FailureCategory.CONNECTION_REFUSED:
        return DialFailure(message, stage=stage)
    if category == FailureCategory.APPLICATION_MISMATCH:
        return ApplicationMismatchError(message)
    if category is not None:
        return HandshakeFailure(message, stage=stage, category=category)
    return ProtocolFailure(message, stage=stage)


@dataclass
class ParticipantContext:
    """Everything a participant needs to know about the case it takes part in."""
    run_id: str
    probe: bytes
    store: RendezvousStore
    listener_key: str
    dialer_key: str
    timeout: float

    @property
    def redis_url(self) -> str:
        return self.store.url or ""


@dataclass
class ParticipantHandle:
    """A running participant and the output collected from it."""
    environment: str
    role: Role
    case: MatrixCase
    context: ParticipantContext
    resource: Any = None
    ready: bool = False
    published: bool = False
    stopped: bool = False
    exit_code: Optional[int] = None
    pending: Deque[ParticipantEvent] = field(default_factory=deque)
    log_lines: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def append_log(self, line: str) -> None:
        with self._lock:
            self.log_lines.append(line)

    @property
    def raw_log(self) -> str:
        with self._lock:
            return "\n".join(f"[{self.role.value}] {line}" for line in self.log_lines)


class EnvironmentDriver(ABC):
    """
    Launches and controls participants of one environment.

    Subclasses provide the transport for output (``_read_event``) and the
    lifecycle hooks. Readiness and event ordering are shared.
    """

    def __init__(self, environment: EnvironmentConfig, settings: SettingsConfig):
        self.environment = environment
        self.settings = settings

    @property
    def name(self) -> str:
        return self.environment.name

    @abstractmethod
    def start(self, role: Role, case: MatrixCase, context: ParticipantContext) -> ParticipantHandle:
        """Launch a participant. Raises InfrastructureError if it cannot be provisioned."""
        pass

    @abstractmethod
    def deliver_rendezvous(self, handle: ParticipantHandle, record: RendezvousRecord) -> None:
        """Hand the listener's record to a dialer that cannot read the store itself."""
        pass

    @abstractmethod
    def stop(self, handle: ParticipantHandle) -> None:
        """Tear the participant down. Must be idempotent."""
        pass

    @abstractmethod
    def _read_event(self, handle: ParticipantHandle, timeout: float) -> Optional[ParticipantEvent]:
        """Wait up to ``timeout`` for the next event from the participant."""
        pass

    def _on_listening(self, handle: ParticipantHandle, event: ParticipantEvent) -> None:
        """Publish the record for a listener that announced its address instead of writing it."""
        if handle.role != Role.LISTENER:
            return
        multiaddr = event.get("multiaddr")
        if not multiaddr:
            logger.warning(f"Ignoring listening event without multiaddr from {self.name}: {event.raw}")
            return
        record = RendezvousRecord(
            test_case_id=handle.case.case_id,
            role=Role.LISTENER.value,
            listen_multiaddr=multiaddr,
            peer_identity=event.get("peer_id") or multiaddr.rpartition("/p2p/")[2],
            ready_timestamp=time.time(),
        )
        handle.context.store.publish(handle.context.listener_key, record)
        handle.published = True
        handle.ready = True

    def _is_ready(self, handle: ParticipantHandle) -> bool:
        return handle.ready

    def next_event(self, handle: ParticipantHandle, timeout: float) -> Optional[ParticipantEvent]:
        """
        Next event from the participant, or None if nothing arrived in time.

        Events consumed while waiting for readiness but meant for the
        verifier are returned first.
        """
        if handle.pending:
            return handle.pending.popleft()
        return self._read_event(handle, timeout)

    def wait_for_ready(self, handle: ParticipantHandle, timeout: float) -> None:
        """
        Block until the participant is ready.

        Args:
            handle: Participant to wait on
            timeout: Seconds to wait

        Raises:
            ParticipantExitError: If the participant exits first
            ProtocolFailure: If the listener reports an error first
            InfrastructureError: If readiness is not reached in time
        """
        deadline = Deadline(timeout)
        held: List[ParticipantEvent] = []
        try:
            while not self._is_ready(handle):
                if deadline.expired():
                    raise InfrastructureError(
                        f"{handle.role.value} {self.name} not ready after {timeout:.1f}s",
                        environment=self.name, role=handle.role.value,
                    )
                event = self.next_event(handle, deadline.clamp(self.settings.poll_interval))
                if event is None:
                    continue
                if event.event == EventType.READY:
                    handle.ready = True
                elif event.event == EventType.LISTENING:
                    self._on_listening(handle, event)
                elif event.event == EventType.EXIT:
                    raise ParticipantExitError(
                        f"{handle.role.value} {self.name} exited before becoming ready "
                        f"(code {event.get('code')})",
                        exit_code=event.get("code"), role=handle.role.value,
                    )
                elif handle.role == Role.LISTENER and event.event == EventType.ERROR:
                    raise error_from_event(event, handle.role.value)
                else:
                    # A dialer that already connected or failed is past readiness
                    held.append(event)
                    handle.ready = True
        finally:
            handle.pending.extendleft(reversed(held))
        logger.debug(f"{handle.role.value} {self.name} ready for {handle.case.case_id}")

    def __str__(self) -> str:
        return f"{self.name} ({self.environment.kind.value})"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self}>"
