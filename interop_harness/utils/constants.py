"""
Constants and enums for the P2P Interop Harness.

This module provides named constants and enums for capabilities, roles,
outcomes and failure categories used throughout the codebase.
"""

from enum import Enum
from typing import Literal


# Capabilities
class Transport(str, Enum):
    """Transport protocols a participant can dial or listen on."""
    TCP = "tcp"
    QUIC = "quic"
    WEBSOCKET = "websocket"
    WEBRTC = "webrtc"
    WEBTRANSPORT = "webtransport"


class SecurityScheme(str, Enum):
    """Security handshake schemes."""
    NOISE = "noise"
    TLS = "tls"


class Multiplexer(str, Enum):
    """Stream multiplexers."""
    YAMUX = "yamux"
    MPLEX = "mplex"


class EnvironmentKind(str, Enum):
    """Execution context a participant runs in."""
    NATIVE = "native"
    BROWSER = "browser"


class Role(str, Enum):
    """Participant role within a test case."""
    LISTENER = "listener"
    DIALER = "dialer"


# Browser sandboxes cannot open raw sockets
BROWSER_TRANSPORTS = frozenset({
    Transport.WEBSOCKET,
    Transport.WEBRTC,
    Transport.WEBTRANSPORT,
})


class CaseState(str, Enum):
    """Lifecycle states of a single matrix case."""
    PENDING = "pending"
    PROVISIONING = "provisioning"
    RENDEZVOUSING = "rendezvousing"
    VERIFYING = "verifying"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({
    CaseState.PASSED,
    CaseState.FAILED,
    CaseState.SKIPPED,
    CaseState.TIMED_OUT,
})


class Outcome(str, Enum):
    """Final outcome of a test case."""
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    TIMEOUT = "timeout"


OUTCOME_TO_STATE: dict[str, CaseState] = {
    Outcome.PASS: CaseState.PASSED,
    Outcome.FAIL: CaseState.FAILED,
    Outcome.SKIP: CaseState.SKIPPED,
    Outcome.TIMEOUT: CaseState.TIMED_OUT,
}


class FailureCategory(str, Enum):
    """Which negotiation stage (or harness layer) broke."""
    INFRASTRUCTURE = "infrastructure"
    RENDEZVOUS_TIMEOUT = "rendezvous_timeout"
    CONNECTION_REFUSED = "connection_refused"
    SECURITY_HANDSHAKE = "security_handshake"
    MUXER_NEGOTIATION = "muxer_negotiation"
    STREAM_OPEN = "stream_open"
    APPLICATION_MISMATCH = "application_mismatch"
    PROTOCOL_ERROR = "protocol_error"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    PARTICIPANT_EXIT = "participant_exit"
    INTERNAL_ERROR = "internal_error"
    UNSUPPORTED = "unsupported"
    EXCLUDED = "excluded"
    CONFIGURATION = "configuration"


# Higher is worse; used to order failures in the summary
CATEGORY_SEVERITY: dict[str, int] = {
    FailureCategory.APPLICATION_MISMATCH: 100,
    FailureCategory.MUXER_NEGOTIATION: 80,
    FailureCategory.SECURITY_HANDSHAKE: 80,
    FailureCategory.STREAM_OPEN: 70,
    FailureCategory.PROTOCOL_ERROR: 65,
    FailureCategory.CONNECTION_REFUSED: 60,
    FailureCategory.RENDEZVOUS_TIMEOUT: 50,
    FailureCategory.DEADLINE_EXCEEDED: 40,
    FailureCategory.PARTICIPANT_EXIT: 40,
    FailureCategory.INFRASTRUCTURE: 20,
    FailureCategory.INTERNAL_ERROR: 10,
}


# Participant event names (one JSON object per line)
class EventType(str, Enum):
    """Structured events emitted by participants."""
    READY = "ready"
    LISTENING = "listening"
    CONNECTED = "connected"
    ECHO = "echo"
    ERROR = "error"
    EXIT = "exit"


# Error stage reported by a participant -> failure category
STAGE_TO_CATEGORY: dict[str, FailureCategory] = {
    "dial": FailureCategory.CONNECTION_REFUSED,
    "security": FailureCategory.SECURITY_HANDSHAKE,
    "muxer": FailureCategory.MUXER_NEGOTIATION,
    "stream": FailureCategory.STREAM_OPEN,
    "echo": FailureCategory.APPLICATION_MISMATCH,
}


# Status literal type for the report
Status = Literal["pass", "fail", "skip", "timeout"]

# Timeout constants (in seconds)
DEFAULT_TEST_TIMEOUT = 180
DEFAULT_READY_TIMEOUT = 30
DEFAULT_RENDEZVOUS_TIMEOUT = 30
DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_ECHO_TIMEOUT = 10
DEFAULT_STOP_GRACE = 5
DEFAULT_POLL_INTERVAL = 0.5

# Default settings
DEFAULT_PARALLEL_TESTS = 4
MAX_PARALLEL_TESTS = 64
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_PROBE_SIZE = 32
DEFAULT_CONFIG_FILE = "matrix.yaml"
DEFAULT_RESULTS_DIR = "results"

# Rendezvous defaults
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_KEY_NAMESPACE = "interop"
DEFAULT_RECORD_TTL = 600

# Environment variables handed to native participants
ENV_ROLE = "INTEROP_ROLE"
ENV_TRANSPORT = "INTEROP_TRANSPORT"
ENV_SECURITY = "INTEROP_SECURITY"
ENV_MUXER = "INTEROP_MUXER"
ENV_CASE_ID = "INTEROP_CASE_ID"
ENV_REDIS_URL = "INTEROP_REDIS_URL"
ENV_LISTENER_KEY = "INTEROP_LISTENER_KEY"
ENV_DIALER_KEY = "INTEROP_DIALER_KEY"
ENV_PROBE = "INTEROP_PROBE"
ENV_TIMEOUT = "INTEROP_TIMEOUT_SECONDS"
ENV_IP = "INTEROP_IP"
