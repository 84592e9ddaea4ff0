"""
Matrix executor for the P2P Interop Harness.

This module runs every case of the matrix through its lifecycle on a
bounded worker pool, applies retries and teardown, and records exactly one
result per case.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from typing import Callable, Dict, List, Optional
import logging

from .config import HarnessConfig, SettingsConfig
from .drivers.base import EnvironmentDriver, ParticipantContext, ParticipantHandle
from .exceptions import InteropHarnessError
from .matrix import MatrixCase, CaseResult, check_support, probe_for
from .rendezvous import RendezvousStore
from .utils.constants import Role, CaseState, Outcome, FailureCategory, TERMINAL_STATES
from .utils.deadline import Deadline
from .verifier import RoundTripVerifier

logger = logging.getLogger(__name__)

_LOG_TAGS = {
    Outcome.PASS: "[PASS]",
    Outcome.FAIL: "[FAIL]",
    Outcome.SKIP: "[SKIP]",
    Outcome.TIMEOUT: "[TIMEOUT]",
}


class DuplicateResultError(RuntimeError):
    """A second result was recorded for a case that already has one."""


class MatrixExecutor:
    """Runs test cases concurrently and collects their results."""

    def __init__(
        self,
        config: HarnessConfig,
        drivers: Dict[str, EnvironmentDriver],
        store: Optional[RendezvousStore],
        verifier: Optional[RoundTripVerifier] = None,
        on_result: Optional[Callable[[CaseResult], None]] = None
    ):
        """
        Initialize matrix executor.

        Args:
            config: Validated configuration
            drivers: Driver per environment name
            store: Rendezvous store shared by all cases (None when every case is skipped)
            verifier: Round-trip verifier (built from settings if omitted)
            on_result: Called once for every recorded result
        """
        self.config = config
        self.settings: SettingsConfig = config.settings
        self.drivers = drivers
        self.store = store
        self.verifier = verifier or RoundTripVerifier(
            connect_timeout=self.settings.connect_timeout,
            echo_timeout=self.settings.echo_timeout,
        )
        self.on_result = on_result

        self._lock = threading.Lock()
        self._results: Dict[str, CaseResult] = {}
        self._states: Dict[str, CaseState] = {}
        self.active = 0
        self.max_active = 0

    @property
    def results(self) -> Dict[str, CaseResult]:
        with self._lock:
            return dict(self._results)

    def state_of(self, case: MatrixCase) -> CaseState:
        with self._lock:
            return self._states.get(case.case_id, CaseState.PENDING)

    def _transition(self, case: MatrixCase, state: CaseState) -> None:
        with self._lock:
            previous = self._states.get(case.case_id, CaseState.PENDING)
            if previous in TERMINAL_STATES:
                raise DuplicateResultError(
                    f"{case.case_id} is already {previous.value}, cannot move to {state.value}"
                )
            self._states[case.case_id] = state
        logger.debug(f"{case.case_id}: {previous.value} -> {state.value}")

    def record(self, result: CaseResult) -> None:
        """
        Record the final result of a case. Each case is recorded once.

        Raises:
            DuplicateResultError: If the case already has a result
        """
        case_id = result.case.case_id
        with self._lock:
            if case_id in self._results:
                raise DuplicateResultError(f"Result for {case_id} already recorded")
            self._results[case_id] = result
        self._transition(result.case, result.state)
        self._log_result(result)
        if self.on_result is not None:
            self.on_result(result)

    def _log_result(self, result: CaseResult) -> None:
        tag = _LOG_TAGS[result.outcome]
        name = result.case.name
        if result.outcome == Outcome.PASS:
            latency = f" in {result.latency * 1000:.0f}ms" if result.latency is not None else ""
            logger.info(f"{tag} {name}{latency}")
        elif result.outcome == Outcome.SKIP:
            logger.info(f"{tag} {name}: {result.message}")
        else:
            category = result.failure_category.value if result.failure_category else "unknown"
            logger.error(f"{tag} {name}: [{category}] {result.message}")

    def run(self, cases: List[MatrixCase]) -> List[CaseResult]:
        """
        Run all cases and return their results in matrix order.

        Args:
            cases: Cases in declaration order

        Returns:
            One result per case
        """
        runnable = []
        for case in cases:
            skip = check_support(case, self.config)
            if skip is not None:
                category, reason = skip
                self.record(CaseResult.skipped(case, category, reason))
            else:
                runnable.append(case)

        logger.info(
            f"Running {len(runnable)} case(s) with {self.settings.parallel_tests} worker(s), "
            f"{len(cases) - len(runnable)} skipped"
        )
        with ThreadPoolExecutor(max_workers=self.settings.parallel_tests) as executor:
            future_to_case = {executor.submit(self.run_case, case): case for case in runnable}
            for future in as_completed(future_to_case):
                case = future_to_case[future]
                try:
                    self.record(future.result())
                except DuplicateResultError:
                    raise
                except Exception as e:
                    logger.exception(f"Unexpected error running {case.case_id}")
                    self.record(CaseResult(
                        case=case,
                        outcome=Outcome.FAIL,
                        failure_category=FailureCategory.INTERNAL_ERROR,
                        message=f"{type(e).__name__}: {e}",
                    ))

        results = self.results
        return [results[case.case_id] for case in cases]

    def run_case(self, case: MatrixCase) -> CaseResult:
        """
        Run one case, retrying infrastructure failures.

        Never raises for per-case failures; they are returned as results.
        """
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            return self._run_case(case)
        finally:
            with self._lock:
                self.active -= 1

    def _run_case(self, case: MatrixCase) -> CaseResult:
        deadline = Deadline(self.settings.test_timeout)
        probe = probe_for(case.case_id, self.settings.probe_size)
        logs: List[str] = []
        attempt = 0

        while True:
            attempt += 1
            try:
                verification = self._attempt(case, probe, deadline, logs, attempt)
            except InteropHarnessError as e:
                if e.retryable and attempt < self.settings.max_attempts and not deadline.expired():
                    logger.warning(f"{case.case_id}: attempt {attempt} failed ({e}), retrying")
                    continue
                return CaseResult(
                    case=case,
                    outcome=e.outcome,
                    failure_category=e.category,
                    message=e.message,
                    raw_log="\n".join(logs),
                    attempts=attempt,
                )
            except Exception as e:
                logger.exception(f"Internal error in {case.case_id}")
                return CaseResult(
                    case=case,
                    outcome=Outcome.FAIL,
                    failure_category=FailureCategory.INTERNAL_ERROR,
                    message=f"{type(e).__name__}: {e}",
                    raw_log="\n".join(logs),
                    attempts=attempt,
                )
            return CaseResult(
                case=case,
                outcome=Outcome.PASS,
                latency=verification.latency,
                raw_log="\n".join(logs),
                attempts=attempt,
                metrics=verification.metrics,
            )

    def _attempt(self, case: MatrixCase, probe: bytes, deadline: Deadline, logs: List[str], attempt: int):
        listener_driver = self.drivers[case.listener]
        dialer_driver = self.drivers[case.dialer]
        context = ParticipantContext(
            run_id=self.store.run_id,
            probe=probe,
            store=self.store,
            listener_key=self.store.key_for(case.case_id, Role.LISTENER),
            dialer_key=self.store.key_for(case.case_id, Role.DIALER),
            timeout=deadline.remaining(),
        )
        if attempt > 1:
            logs.append(f"--- attempt {attempt} ---")

        with ExitStack() as stack:
            # Callbacks run in reverse: participants stop first, keys go last
            stack.callback(self._teardown, "rendezvous cleanup", lambda: self.store.cleanup(case.case_id), logs)
            self._set_state(case, CaseState.PROVISIONING)

            listener = listener_driver.start(Role.LISTENER, case, context)
            stack.callback(self._stop, listener_driver, listener, logs)
            dialer = dialer_driver.start(Role.DIALER, case, context)
            stack.callback(self._stop, dialer_driver, dialer, logs)
            listener_driver.wait_for_ready(listener, deadline.clamp(self.settings.ready_timeout))

            self._set_state(case, CaseState.RENDEZVOUSING)
            record = self.store.await_record(
                context.listener_key, deadline.clamp(self.settings.rendezvous_timeout)
            )
            dialer_driver.deliver_rendezvous(dialer, record)
            dialer_driver.wait_for_ready(dialer, deadline.clamp(self.settings.ready_timeout))

            self._set_state(case, CaseState.VERIFYING)
            return self.verifier.verify(case, dialer_driver, dialer, probe, deadline)

    def _set_state(self, case: MatrixCase, state: CaseState) -> None:
        if self.state_of(case) != state:
            self._transition(case, state)

    def _stop(self, driver: EnvironmentDriver, handle: ParticipantHandle, logs: List[str]) -> None:
        self._teardown(f"stop {handle.role.value} {driver.name}", lambda: driver.stop(handle), logs)
        if handle.log_lines:
            logs.append(handle.raw_log)

    def _teardown(self, what: str, action: Callable[[], None], logs: List[str]) -> None:
        """Run one teardown step. Errors are logged and kept, never raised."""
        try:
            action()
        except Exception as e:
            logger.warning(f"Teardown step '{what}' failed: {e}")
            logs.append(f"teardown error ({what}): {e}")
