"""
Matrix expansion for the P2P Interop Harness.

This module turns the configured environments and axes into the ordered
list of test cases, and decides which of them cannot run.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .config import HarnessConfig, EnvironmentConfig, ExclusionConfig
from .utils.constants import (
    Transport, SecurityScheme, Multiplexer, EnvironmentKind, Outcome,
    FailureCategory, CaseState, OUTCOME_TO_STATE,
)


@dataclass(frozen=True)
class MatrixCase:
    """One cell of the matrix: an ordered environment pair plus a protocol triple."""
    dialer: str
    listener: str
    dialer_kind: EnvironmentKind
    listener_kind: EnvironmentKind
    transport: Transport
    security: SecurityScheme
    muxer: Multiplexer
    index: int = 0

    @property
    def case_id(self) -> str:
        # Environment names cannot contain ':'
        return ":".join([
            self.dialer, self.listener,
            self.transport.value, self.security.value, self.muxer.value,
        ])

    @property
    def name(self) -> str:
        return (
            f"{self.dialer} x {self.listener} "
            f"({self.transport.value}, {self.security.value}, {self.muxer.value})"
        )

    @property
    def pairing(self) -> str:
        return f"{self.dialer_kind.value}->{self.listener_kind.value}"

    def dimensions(self) -> Dict[str, str]:
        """Values this case contributes to each aggregation dimension."""
        return {
            "transport": self.transport.value,
            "security": self.security.value,
            "muxer": self.muxer.value,
            "dialer": self.dialer,
            "listener": self.listener,
            "dialer_kind": self.dialer_kind.value,
            "listener_kind": self.listener_kind.value,
            "pairing": self.pairing,
        }


@dataclass(frozen=True)
class CaseResult:
    """Final, immutable verdict for one case."""
    case: MatrixCase
    outcome: Outcome
    latency: Optional[float] = None
    failure_category: Optional[FailureCategory] = None
    message: str = ""
    raw_log: str = ""
    attempts: int = 0
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def state(self) -> CaseState:
        return OUTCOME_TO_STATE[self.outcome]

    @property
    def is_failure(self) -> bool:
        """Failures and timeouts count against the run; skips do not."""
        return self.outcome in (Outcome.FAIL, Outcome.TIMEOUT)

    @classmethod
    def skipped(cls, case: MatrixCase, category: FailureCategory, reason: str) -> "CaseResult":
        return cls(case=case, outcome=Outcome.SKIP, failure_category=category, message=reason)


def probe_for(case_id: str, size: int) -> bytes:
    """Deterministic round-trip payload for a case."""
    return hashlib.shake_256(case_id.encode("utf-8")).digest(size)


def expand_matrix(config: HarnessConfig) -> List[MatrixCase]:
    """
    Expand the configuration into the full, ordered list of cases.

    Order is declaration order: pairing, then transport, then security
    scheme, then multiplexer.

    Args:
        config: Validated harness configuration

    Returns:
        One MatrixCase per matrix cell, including cells that will be skipped
    """
    cases = []
    for pairing in config.get_pairings():
        dialer = config.get_environment(pairing.dialer)
        listener = config.get_environment(pairing.listener)
        for transport in config.matrix.transports:
            for security in config.matrix.security:
                for muxer in config.matrix.muxers:
                    cases.append(MatrixCase(
                        dialer=dialer.name,
                        listener=listener.name,
                        dialer_kind=dialer.kind,
                        listener_kind=listener.kind,
                        transport=transport,
                        security=security,
                        muxer=muxer,
                        index=len(cases),
                    ))
    return cases


def filter_cases(
    cases: Iterable[MatrixCase],
    transports: Optional[List[str]] = None,
    security: Optional[List[str]] = None,
    muxers: Optional[List[str]] = None,
    dialers: Optional[List[str]] = None,
    listeners: Optional[List[str]] = None
) -> List[MatrixCase]:
    """Keep only the cases matching every given filter. Order is preserved."""
    def allowed(value: str, wanted: Optional[List[str]]) -> bool:
        return not wanted or value in wanted

    return [
        case for case in cases
        if allowed(case.transport.value, transports)
        and allowed(case.security.value, security)
        and allowed(case.muxer.value, muxers)
        and allowed(case.dialer, dialers)
        and allowed(case.listener, listeners)
    ]


def _missing_capabilities(case: MatrixCase, environment: EnvironmentConfig) -> List[str]:
    missing = []
    if case.transport not in environment.transports:
        missing.append(f"transport {case.transport.value}")
    if case.security not in environment.security:
        missing.append(f"security {case.security.value}")
    if case.muxer not in environment.muxers:
        missing.append(f"muxer {case.muxer.value}")
    return missing


def _matches_exclusion(case: MatrixCase, exclusion: ExclusionConfig) -> bool:
    pairs = [
        (exclusion.dialer, case.dialer),
        (exclusion.listener, case.listener),
        (exclusion.transport, case.transport),
        (exclusion.security, case.security),
        (exclusion.muxer, case.muxer),
    ]
    return all(wanted is None or wanted == actual for wanted, actual in pairs)


def check_support(
    case: MatrixCase,
    config: HarnessConfig
) -> Optional[Tuple[FailureCategory, str]]:
    """
    Decide whether a case can run.

    Args:
        case: Case to check
        config: Configuration holding capability sets and exclusions

    Returns:
        None when the case is runnable, otherwise the skip category and a
        reason naming the side and capability that rule it out
    """
    reasons = []
    for role, name in (("dialer", case.dialer), ("listener", case.listener)):
        missing = _missing_capabilities(case, config.get_environment(name))
        if missing:
            reasons.append(f"{role} {name} does not support {', '.join(missing)}")
    if reasons:
        return FailureCategory.UNSUPPORTED, "; ".join(reasons)

    for exclusion in config.matrix.exclude:
        if _matches_exclusion(case, exclusion):
            return FailureCategory.EXCLUDED, exclusion.reason or "known incompatible combination"
    return None
