"""
Pydantic models for the canonical P2P Interop Harness report.

This module provides type-safe models for generating and validating the
JSON report a run produces.
"""

from __future__ import annotations
from typing import Optional, List, Dict, Literal
from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime, timezone

from .utils.constants import Status

SchemaVersion = Literal["1.0.0"]


class CaseReport(BaseModel):
    """Outcome of a single matrix case."""
    id: str
    name: str
    dialer: str
    listener: str
    dialer_kind: str
    listener_kind: str
    transport: str
    security: str
    muxer: str
    status: Status
    failure_category: Optional[str] = None
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    attempts: int = 0
    metrics: Dict[str, float] = Field(default_factory=dict)
    raw_log: Optional[str] = None


class DimensionStats(BaseModel):
    """Counts for one value of one dimension."""
    passed: int = 0
    failed: int = 0
    timed_out: int = 0
    skipped: int = 0
    total: int = 0
    # Skipped cases are not part of the denominator; None when nothing ran
    pass_rate: Optional[float] = None

    def add(self, status: str) -> None:
        if status == "pass":
            self.passed += 1
        elif status == "fail":
            self.failed += 1
        elif status == "timeout":
            self.timed_out += 1
        else:
            self.skipped += 1
        self.total += 1
        ran = self.passed + self.failed + self.timed_out
        self.pass_rate = round(self.passed / ran * 100.0, 2) if ran else None


class Aggregates(BaseModel):
    """Aggregated counts overall and per dimension value."""
    totals: DimensionStats
    by_dimension: Dict[str, Dict[str, DimensionStats]]


class RunnerInfo(BaseModel):
    """Machine and environment info for reproducibility."""
    os: str
    kernel: Optional[str] = None
    cpu: str
    python: str
    container_image: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class RunInfo(BaseModel):
    """Information about this particular harness execution."""
    id: str
    created_at: datetime
    branch: str
    commit: str
    duration_s: Optional[float] = None
    parallel_tests: int
    max_active: int = 0
    runner: RunnerInfo


class EnvironmentInfo(BaseModel):
    """Capability set of each environment in the run."""
    name: str
    kind: str
    description: Optional[str] = None
    transports: List[str]
    security: List[str]
    muxers: List[str]


class InteropReport(BaseModel):
    """Canonical schema for the P2P Interop Harness report."""
    schema_version: SchemaVersion = "1.0.0"
    run: RunInfo
    environments: List[EnvironmentInfo]
    cases: List[CaseReport]
    aggregates: Aggregates
    verdict: Literal["pass", "fail"]

    model_config = ConfigDict(extra="allow")

    def pass_rate(self) -> Optional[float]:
        """Overall pass rate percentage, skipped cases excluded."""
        return self.aggregates.totals.pass_rate

    def failures(self) -> List[CaseReport]:
        return [c for c in self.cases if c.status in ("fail", "timeout")]


def make_run_id() -> str:
    """Generate a unique run ID with timestamp and short hash."""
    import hashlib
    import os
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y-%m-%dT%H-%M-%SZ")
    hash_suffix = hashlib.sha1(f"{now.isoformat()}-{os.getpid()}".encode()).hexdigest()[:6]
    return f"{timestamp}_{hash_suffix}"


def get_runner_info() -> RunnerInfo:
    """Get current runner information."""
    import platform
    import os

    kernel = platform.release() if platform.system() == "Linux" else None

    # Check for container
    container_image = None
    if os.path.exists("/.dockerenv"):
        container_image = "docker"
    elif os.path.exists("/run/.containerenv"):
        container_image = "podman"

    return RunnerInfo(
        os=platform.platform(),
        kernel=kernel,
        cpu=platform.processor() or "Unknown",
        python=platform.python_version(),
        container_image=container_image
    )


if __name__ == "__main__":
    """CLI validation tool."""
    import sys
    import json

    if len(sys.argv) != 2:
        print("Usage: python3 -m interop_harness.models <report.json>")
        sys.exit(1)

    try:
        with open(sys.argv[1], 'r') as f:
            data = json.load(f)
        report = InteropReport.model_validate(data)
        rate = report.pass_rate()
        print(f"Schema validated successfully. Pass rate: {'n/a' if rate is None else f'{rate}%'}")
    except Exception as e:
        print(f"Validation failed: {e}")
        sys.exit(1)
