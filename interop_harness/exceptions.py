"""
Custom exception hierarchy for the P2P Interop Harness.

Every exception carries the failure category and outcome it maps to, so a
raised error can be recorded as a case result without string matching.
"""

from typing import Optional, Dict, Any

from .utils.constants import FailureCategory, Outcome


class InteropHarnessError(Exception):
    """Base exception for all P2P Interop Harness errors."""

    category: FailureCategory = FailureCategory.INTERNAL_ERROR
    outcome: Outcome = Outcome.FAIL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        category: Optional[FailureCategory] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        """
        Initialize harness error.

        Args:
            message: Human-readable error message
            category: Override for the class-level failure category
            context: Optional additional context dictionary
        """
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category
        self.context = context or {}

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.message}"


class ConfigurationError(InteropHarnessError):
    """Exception raised for configuration-related errors. Fatal to the run."""

    category = FailureCategory.CONFIGURATION

    def __init__(
        self,
        message: str,
        config_path: Optional[str] = None,
        field: Optional[str] = None,
        **kwargs
    ):
        """
        Initialize configuration error.

        Args:
            message: Error message
            config_path: Path to configuration file (if applicable)
            field: Configuration field that caused the error (if applicable)
            **kwargs: Additional arguments passed to base class
        """
        context = kwargs.pop("context", {})
        if config_path:
            context["config_path"] = config_path
        if field:
            context["field"] = field

        super().__init__(message, context=context, **kwargs)
        self.config_path = config_path
        self.field = field


class RendezvousUnavailableError(InteropHarnessError):
    """The rendezvous store cannot be reached at startup. Fatal to the run."""

    category = FailureCategory.INFRASTRUCTURE

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if url:
            context["url"] = url
        super().__init__(message, context=context, **kwargs)
        self.url = url


class InfrastructureError(InteropHarnessError):
    """
    Exception raised when a participant cannot be provisioned or torn down.

    Covers process spawn errors, browser sessions that cannot be created and
    store errors in the middle of a case. These are retried by the executor.
    """

    category = FailureCategory.INFRASTRUCTURE
    retryable = True

    def __init__(
        self,
        message: str,
        environment: Optional[str] = None,
        role: Optional[str] = None,
        **kwargs
    ):
        """
        Initialize infrastructure error.

        Args:
            message: Error message
            environment: Name of the environment that failed
            role: Participant role being provisioned
            **kwargs: Additional arguments passed to base class
        """
        context = kwargs.pop("context", {})
        if environment:
            context["environment"] = environment
        if role:
            context["role"] = role
        super().__init__(message, context=context, **kwargs)
        self.environment = environment
        self.role = role


class RendezvousTimeoutError(InteropHarnessError):
    """Bootstrap information never appeared in the store."""

    category = FailureCategory.RENDEZVOUS_TIMEOUT
    outcome = Outcome.TIMEOUT

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if key:
            context["key"] = key
        if timeout_seconds is not None:
            context["timeout_seconds"] = timeout_seconds
        super().__init__(message, context=context, **kwargs)
        self.key = key
        self.timeout_seconds = timeout_seconds


class ProtocolFailure(InteropHarnessError):
    """
    Base class for failures inside the protocol stack under test.

    Raised as is when a participant reports an error at a stage the
    harness does not know.
    """

    category = FailureCategory.PROTOCOL_ERROR

    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if stage:
            context["stage"] = stage
        super().__init__(message, context=context, **kwargs)
        self.stage = stage


class DialFailure(ProtocolFailure):
    """The dialer could not reach the listener (connection refused, unreachable)."""

    category = FailureCategory.CONNECTION_REFUSED


class HandshakeFailure(ProtocolFailure):
    """
    Security or multiplexer negotiation was rejected.

    The category is chosen by the caller from the stage the participant
    reported (security handshake, muxer negotiation or stream open).
    """

    category = FailureCategory.SECURITY_HANDSHAKE


class ApplicationMismatchError(ProtocolFailure):
    """The round-trip payload came back different. Highest severity."""

    category = FailureCategory.APPLICATION_MISMATCH

    def __init__(
        self,
        message: str,
        expected: Optional[bytes] = None,
        actual: Optional[bytes] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if expected is not None and actual is not None:
            context["expected_len"] = len(expected)
            context["actual_len"] = len(actual)
            context["first_diff_offset"] = first_difference(expected, actual)
        super().__init__(message, stage="echo", context=context, **kwargs)
        self.expected = expected
        self.actual = actual


class DeadlineExceededError(InteropHarnessError):
    """A stage of the case did not finish before its deadline."""

    category = FailureCategory.DEADLINE_EXCEEDED
    outcome = Outcome.TIMEOUT

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if stage:
            context["stage"] = stage
        if timeout_seconds is not None:
            context["timeout_seconds"] = round(timeout_seconds, 3)
        super().__init__(message, context=context, **kwargs)
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class ParticipantExitError(InteropHarnessError):
    """A participant exited before the case completed."""

    category = FailureCategory.PARTICIPANT_EXIT

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        role: Optional[str] = None,
        **kwargs
    ):
        context = kwargs.pop("context", {})
        if exit_code is not None:
            context["exit_code"] = exit_code
        if role:
            context["role"] = role
        super().__init__(message, context=context, **kwargs)
        self.exit_code = exit_code
        self.role = role


def first_difference(expected: bytes, actual: bytes) -> Optional[int]:
    """Return the offset of the first differing byte, or None if equal."""
    for i, (a, b) in enumerate(zip(expected, actual)):
        if a != b:
            return i
    if len(expected) != len(actual):
        return min(len(expected), len(actual))
    return None
