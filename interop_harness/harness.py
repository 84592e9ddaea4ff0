"""
P2P Interop Harness

Runs every (dialer, listener, transport, security, multiplexer) combination
of the configured matrix across native and browser environments and reports
one verdict per combination.
"""

import argparse
import sys
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from .asset_server import AssetServer
from .config import HarnessConfig
from .drivers import EnvironmentDriver, create_driver
from .exceptions import ConfigurationError, InteropHarnessError, RendezvousUnavailableError
from .executor import MatrixExecutor
from .matrix import MatrixCase, CaseResult, expand_matrix, filter_cases, check_support
from .models import InteropReport, make_run_id
from .output import ReportGenerator
from .rendezvous import RendezvousStore
from .utils.constants import EnvironmentKind, DEFAULT_CONFIG_FILE

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ERROR = 2


class InteropHarness:
    """Main entry point tying configuration, drivers and the executor together."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE, redis_url: Optional[str] = None,
                 parallel: Optional[int] = None):
        """
        Load and validate the configuration.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        self.config_path = config_path
        try:
            self.config = HarnessConfig.load_from_file(config_path)
        except (FileNotFoundError, ValueError) as e:
            raise ConfigurationError(str(e), config_path=config_path) from e
        if redis_url:
            self.config.rendezvous.url = redis_url
        if parallel is not None:
            if parallel < 1:
                raise ConfigurationError("--parallel must be at least 1", field="parallel_tests")
            self.config.settings.parallel_tests = parallel
        self.run_id = make_run_id()
        self.max_active = 0

    def cases(
        self,
        transports: Optional[List[str]] = None,
        security: Optional[List[str]] = None,
        muxers: Optional[List[str]] = None,
        dialers: Optional[List[str]] = None,
        listeners: Optional[List[str]] = None
    ) -> List[MatrixCase]:
        """Expanded matrix, narrowed by the given filters."""
        return filter_cases(
            expand_matrix(self.config),
            transports=transports, security=security, muxers=muxers,
            dialers=dialers, listeners=listeners,
        )

    def _create_store(self) -> RendezvousStore:
        rendezvous = self.config.rendezvous
        store = RendezvousStore.from_url(
            rendezvous.url,
            namespace=rendezvous.namespace,
            run_id=self.run_id,
            ttl=rendezvous.ttl,
            poll_interval=self.config.settings.poll_interval,
        )
        store.ping()
        return store

    def _create_drivers(self, cases: List[MatrixCase], asset_url: Optional[str]) -> Dict[str, EnvironmentDriver]:
        """Drivers for the environments taking part in ``cases``."""
        names = {c.dialer for c in cases} | {c.listener for c in cases}
        return {
            environment.name: create_driver(
                environment, self.config.settings, self.config.browser, asset_url
            )
            for environment in self.config.environments
            if environment.name in names
        }

    def run(self, cases: List[MatrixCase]) -> List[CaseResult]:
        """
        Run the given cases.

        Raises:
            RendezvousUnavailableError: If the store cannot be reached
            InfrastructureError: If the asset server cannot start
        """
        runnable = [c for c in cases if check_support(c, self.config) is None]
        needs_browser = any(
            EnvironmentKind.BROWSER in (c.dialer_kind, c.listener_kind) for c in runnable
        )

        with ExitStack() as stack:
            store = None
            # A fully skipped selection never touches the store
            if runnable:
                store = self._create_store()
                stack.callback(store.close)

            asset_url = None
            if needs_browser:
                settings = self.config.asset_server
                server = AssetServer(
                    host=settings.host,
                    port=settings.port,
                    bundle_dir=settings.bundle_dir,
                    public_url=settings.public_url,
                )
                server.start()
                stack.callback(server.stop)
                asset_url = server.base_url

            executor = MatrixExecutor(self.config, self._create_drivers(runnable, asset_url), store)
            logger.info(f"Run {self.run_id}: {len(cases)} case(s)")
            results = executor.run(cases)
            self.max_active = executor.max_active
            return results

    def build_report(self, results: List[CaseResult], branch: str, commit: str,
                     started_at: datetime) -> InteropReport:
        generator = ReportGenerator(self.config)
        return generator.build_report(
            results, self.run_id, branch=branch, commit=commit,
            started_at=started_at, max_active=self.max_active,
        )


def _split_list(values: Optional[List[str]]) -> Optional[List[str]]:
    """Accept comma-separated or space-separated lists."""
    if not values:
        return None
    items = []
    for value in values:
        items.extend(v.strip() for v in value.split(",") if v.strip())
    return items


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="P2P Interop Harness")
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Matrix configuration file")
    parser.add_argument("--output", help="Save the report to file")
    parser.add_argument("--output-format", choices=["canonical", "ndjson"], default=None,
                        help="Report format (canonical JSON or NDJSON)")
    parser.add_argument("--summary-only", action="store_true",
                        help="Show only the summary, not the report")
    parser.add_argument("--list-cases", action="store_true",
                        help="List the matrix cases and exit")
    parser.add_argument("--transport", nargs="*", help="Transports to test (comma-separated or space-separated)")
    parser.add_argument("--security", nargs="*", help="Security schemes to test (comma-separated or space-separated)")
    parser.add_argument("--muxer", nargs="*", help="Multiplexers to test (comma-separated or space-separated)")
    parser.add_argument("--dialer", nargs="*", help="Dialer environments to test (comma-separated or space-separated)")
    parser.add_argument("--listener", nargs="*", help="Listener environments to test (comma-separated or space-separated)")
    parser.add_argument("--parallel", type=int, help="Number of cases to run concurrently")
    parser.add_argument("--redis-url", help="Rendezvous store URL (overrides the configuration)")
    parser.add_argument("--branch", default="main", help="Git branch name")
    parser.add_argument("--commit", default="unknown", help="Git commit hash")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    try:
        harness = InteropHarness(args.config, redis_url=args.redis_url, parallel=args.parallel)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e.message}")
        return EXIT_ERROR

    cases = harness.cases(
        transports=_split_list(args.transport),
        security=_split_list(args.security),
        muxers=_split_list(args.muxer),
        dialers=_split_list(args.dialer),
        listeners=_split_list(args.listener),
    )

    if args.list_cases:
        print(f"Matrix cases ({len(cases)}):")
        for case in cases:
            skip = check_support(case, harness.config)
            status = "[RUN] " if skip is None else "[SKIP]"
            reason = f" - {skip[1]}" if skip else ""
            print(f"  {status} {case.name}{reason}")
        return EXIT_OK

    if not cases:
        logger.error("No cases match the given filters")
        return EXIT_ERROR

    started_at = datetime.now(timezone.utc)
    try:
        results = harness.run(cases)
    except RendezvousUnavailableError as e:
        logger.error(f"Rendezvous store unavailable: {e.message}")
        return EXIT_ERROR
    except InteropHarnessError as e:
        logger.error(f"Run aborted: {e}")
        return EXIT_ERROR

    report = harness.build_report(results, args.branch, args.commit, started_at)
    generator = ReportGenerator(harness.config)
    output_format = args.output_format or harness.config.output.format

    if args.summary_only:
        generator.print_summary(report)
    elif args.output:
        generator.save_report(report, args.output, output_format)
        generator.print_summary(report)
    else:
        generator.write_report(report, sys.stdout, output_format)

    # Exit code: 0=no failures, 1=failures or timeouts, 2=error
    return EXIT_FAILURES if report.verdict == "fail" else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
