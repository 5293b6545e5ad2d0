"""
Suite runner: setup, test cases (sequential or parallel), teardown.

fail_fast is honoured for sequential runs only; parallel suite runs start
every test case regardless of earlier failures.
"""

import dataclasses
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, List, Optional

from ..exec.cancellation import CancellationToken
from ..models import StepStatus, SuiteResult, TestCase, TestCaseOutcome, TestSuite

if TYPE_CHECKING:
    from ..engine import TestEngine

logger = logging.getLogger(__name__)


class SuiteRunner:
    """Runs a TestSuite through a TestEngine."""

    def __init__(self, engine: 'TestEngine'):
        self.engine = engine

    def run(self, suite: TestSuite, token: Optional[CancellationToken] = None) -> SuiteResult:
        """
        Run a suite.

        Args:
            suite: Suite to run
            token: Cancellation token shared by all test cases

        Returns:
            SuiteResult with one outcome per test case, in suite order
        """
        start_time = time.time()
        token = token or CancellationToken()
        result = SuiteResult(suite=suite)
        logger.info(f"Running suite '{suite.name}' ({len(suite.test_cases)} test cases)")

        if suite.setup:
            result.setup_result = self.engine.execute_test_case(
                self._phase(suite, "setup", suite.setup), token
            )

        if result.setup_result is not None and result.setup_result.status == StepStatus.FAILED:
            logger.error(f"Suite '{suite.name}' setup failed, skipping all test cases")
            result.case_results = [
                TestCaseOutcome(test_case=case, status=StepStatus.SKIPPED, error="skipped: suite setup failed")
                for case in suite.test_cases
            ]
        elif suite.parallel is not None and suite.parallel.enabled:
            result.case_results = self._run_parallel(suite, token)
        else:
            result.case_results = self._run_sequential(suite, token)

        if suite.teardown:
            result.teardown_result = self.engine.execute_test_case(
                self._phase(suite, "teardown", suite.teardown), CancellationToken()
            )

        result.duration = time.time() - start_time
        logger.info(f"Suite '{suite.name}' finished: {result.status.value} in {result.duration:.2f}s")
        return result

    def _run_sequential(self, suite: TestSuite, token: CancellationToken) -> List[TestCaseOutcome]:
        outcomes: List[TestCaseOutcome] = []
        first_failure: Optional[str] = None

        for case in suite.test_cases:
            if suite.fail_fast and first_failure is not None:
                outcomes.append(TestCaseOutcome(
                    test_case=case,
                    status=StepStatus.SKIPPED,
                    error=f"skipped due to fail-fast after failure: {first_failure}"
                ))
                continue

            outcome = self._run_case(suite, case, token)
            outcomes.append(outcome)
            if outcome.status == StepStatus.FAILED and first_failure is None:
                first_failure = case.name

        return outcomes

    def _run_parallel(self, suite: TestSuite, token: CancellationToken) -> List[TestCaseOutcome]:
        if suite.fail_fast:
            logger.warning("fail_fast is not enforced when test cases run in parallel")

        workers = max(1, min(suite.parallel.max_concurrency, len(suite.test_cases) or 1))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._run_case, suite, case, token) for case in suite.test_cases]
            return [future.result() for future in futures]

    def _run_case(self, suite: TestSuite, case: TestCase, token: CancellationToken) -> TestCaseOutcome:
        merged = dataclasses.replace(
            case,
            variables={**suite.variables, **case.variables},
            secrets=list(suite.secrets) + list(case.secrets)
        )
        test_result = self.engine.execute_test_case(merged, token)
        return TestCaseOutcome(
            test_case=case,
            status=test_result.status,
            result=test_result,
            error=test_result.error
        )

    def _phase(self, suite: TestSuite, phase: str, steps) -> TestCase:
        return TestCase(
            name=f"{suite.name} {phase}",
            steps=steps,
            variables=dict(suite.variables),
            secrets=list(suite.secrets)
        )
