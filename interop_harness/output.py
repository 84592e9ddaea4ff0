"""
Output generation for the P2P Interop Harness.

This module handles report construction, serialization and summary
printing.
"""

import json
from datetime import datetime, timezone
from typing import Dict, IO, List, Optional
import logging

from .config import HarnessConfig
from .matrix import CaseResult
from .models import (
    InteropReport, RunInfo, CaseReport, DimensionStats, Aggregates,
    EnvironmentInfo, get_runner_info,
)
from .utils.constants import CATEGORY_SEVERITY

logger = logging.getLogger(__name__)

DIMENSIONS = [
    "transport", "security", "muxer", "dialer", "listener",
    "dialer_kind", "listener_kind", "pairing",
]


class ReportGenerator:
    """Generates the canonical report and summaries from case results."""

    def __init__(self, config: HarnessConfig, include_raw_logs: Optional[bool] = None):
        """
        Initialize report generator.

        Args:
            config: Configuration of the run (environments, settings)
            include_raw_logs: Override for ``output.include_raw_logs``
        """
        self.config = config
        self.include_raw_logs = (
            config.output.include_raw_logs if include_raw_logs is None else include_raw_logs
        )

    def build_report(
        self,
        results: List[CaseResult],
        run_id: str,
        branch: str = "main",
        commit: str = "unknown",
        started_at: Optional[datetime] = None,
        max_active: int = 0
    ) -> InteropReport:
        """
        Build the canonical report.

        Args:
            results: One result per case, in matrix order
            run_id: Identifier of this run
            branch: Git branch name
            commit: Git commit hash
            started_at: When the run started, for the duration field
            max_active: Peak number of concurrently active cases

        Returns:
            InteropReport in canonical format
        """
        now = datetime.now(timezone.utc)
        created_at = started_at or now
        run_info = RunInfo(
            id=run_id,
            created_at=created_at,
            branch=branch,
            commit=commit,
            duration_s=round((now - created_at).total_seconds(), 3),
            parallel_tests=self.config.settings.parallel_tests,
            max_active=max_active,
            runner=get_runner_info(),
        )

        environments = [
            EnvironmentInfo(
                name=e.name,
                kind=e.kind.value,
                description=e.description,
                transports=[t.value for t in e.transports],
                security=[s.value for s in e.security],
                muxers=[m.value for m in e.muxers],
            )
            for e in self.config.environments
        ]

        cases = [self._case_report(r) for r in results]
        aggregates = self._calculate_aggregates(results)
        verdict = "fail" if any(r.is_failure for r in results) else "pass"

        return InteropReport(
            run=run_info,
            environments=environments,
            cases=cases,
            aggregates=aggregates,
            verdict=verdict,
        )

    def _case_report(self, result: CaseResult) -> CaseReport:
        case = result.case
        return CaseReport(
            id=case.case_id,
            name=case.name,
            dialer=case.dialer,
            listener=case.listener,
            dialer_kind=case.dialer_kind.value,
            listener_kind=case.listener_kind.value,
            transport=case.transport.value,
            security=case.security.value,
            muxer=case.muxer.value,
            status=result.outcome.value,
            failure_category=result.failure_category.value if result.failure_category else None,
            message=result.message or None,
            latency_ms=round(result.latency * 1000, 3) if result.latency is not None else None,
            attempts=result.attempts,
            metrics=dict(result.metrics),
            raw_log=(result.raw_log or None) if self.include_raw_logs else None,
        )

    def _calculate_aggregates(self, results: List[CaseResult]) -> Aggregates:
        """Calculate totals and per-dimension statistics."""
        totals = DimensionStats()
        by_dimension: Dict[str, Dict[str, DimensionStats]] = {d: {} for d in DIMENSIONS}
        for result in results:
            status = result.outcome.value
            totals.add(status)
            for dimension, value in result.case.dimensions().items():
                by_dimension[dimension].setdefault(value, DimensionStats()).add(status)
        return Aggregates(totals=totals, by_dimension=by_dimension)

    def write_report(self, report: InteropReport, stream: IO[str], output_format: str = "canonical") -> None:
        """
        Serialize the report.

        Args:
            report: Report to write
            stream: Destination (file or stdout)
            output_format: ``canonical`` for one JSON document, ``ndjson``
                           for one typed JSON object per line
        """
        if output_format == "ndjson":
            stream.write(json.dumps({"type": "run_info", **report.run.model_dump(mode="json")}) + "\n")
            for environment in report.environments:
                stream.write(json.dumps({"type": "environment", **environment.model_dump(mode="json")}) + "\n")
            for case in report.cases:
                stream.write(json.dumps({"type": "case", **case.model_dump(mode="json")}) + "\n")
            stream.write(json.dumps({
                "type": "aggregates",
                **report.aggregates.model_dump(mode="json"),
                "verdict": report.verdict,
            }) + "\n")
        else:
            json.dump(report.model_dump(mode="json"), stream, indent=2)
            stream.write("\n")

    def save_report(self, report: InteropReport, path: str, output_format: str = "canonical") -> None:
        with open(path, "w", encoding="utf-8") as f:
            self.write_report(report, f, output_format)
        logger.info(f"{'NDJSON' if output_format == 'ndjson' else 'Canonical'} report saved to {path}")

    def print_summary(self, report: InteropReport) -> None:
        """Print summary of the run, worst failures first."""
        totals = report.aggregates.totals
        print("\n" + "=" * 50)
        print("P2P Interop Harness Summary")
        print("=" * 50)
        print(f"Total Cases: {totals.total}")
        print(f"Passed: {totals.passed}")
        print(f"Failed: {totals.failed}")
        print(f"Timed out: {totals.timed_out}")
        print(f"Skipped: {totals.skipped}")
        if totals.pass_rate is not None:
            print(f"Pass Rate: {totals.pass_rate:.1f}% (skipped cases excluded)")

        print("\nBy pairing:")
        for pairing, stats in sorted(report.aggregates.by_dimension["pairing"].items()):
            print(f"  {pairing}: {stats.passed}/{stats.total - stats.skipped} passed, {stats.skipped} skipped")

        failures = sorted(
            report.failures(),
            key=lambda c: -CATEGORY_SEVERITY.get(c.failure_category, 0),
        )
        if failures:
            print("\nFailed cases:")
            for case in failures:
                tag = "[TIMEOUT]" if case.status == "timeout" else "[FAIL]"
                print(f"  {tag} {case.name}")
                print(f"    Category: {case.failure_category}")
                if case.message:
                    print(f"    {case.message}")
        print("=" * 50)
        print(f"Verdict: {report.verdict.upper()}")
