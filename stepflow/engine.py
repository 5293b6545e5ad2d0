"""
Test engine: runs test cases and aggregates their step results.
"""

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .actions.registry import ActionRegistry
from .exceptions import ExecutionCancelled, TestCaseValidationError
from .exec.cancellation import CancellationToken
from .models import Step, StepResult, StepStatus, TestCase, TestResult
from .security.secrets import SecretsManager
from .variables.store import VariableStore
from .workflow.control_flow import is_fatal
from .workflow.executor import StepRunner
from .workflow.skip import evaluate_skip

logger = logging.getLogger(__name__)


class TestEngine:
    """
    Entry point for executing test cases.

    One engine can run many test cases, also concurrently; each run gets
    its own variable store and result log. Secret values of every run are
    registered with the shared SecretsManager so log filters can mask them.
    """

    __test__ = False

    def __init__(
        self,
        action_executor=None,
        secrets_manager: Optional[SecretsManager] = None,
        silent: bool = False,
        base_dir: Optional[Path] = None
    ):
        """
        Initialize the engine.

        Args:
            action_executor: Executor with execute(token, action, args, options, silent);
                defaults to an ActionRegistry with the built-in actions
            secrets_manager: Shared masking registry
            silent: Ask actions to suppress their own output
            base_dir: Directory relative secret files resolve against
        """
        self.action_executor = action_executor if action_executor is not None else ActionRegistry()
        self.secrets_manager = secrets_manager or SecretsManager(base_dir)
        self.silent = silent

    def execute_test_case(
        self,
        test_case: TestCase,
        token: Optional[CancellationToken] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> TestResult:
        """
        Execute a test case.

        Args:
            test_case: Test case to run
            token: Cancellation token; the test case timeout adds a deadline
            variables: Extra variables that override the test case's own

        Returns:
            Aggregated TestResult
        """
        start_time = time.time()
        token = token or CancellationToken()
        if test_case.timeout:
            token = token.child(test_case.timeout)

        logger.info(f"Running test case '{test_case.name}'")

        store = VariableStore(secrets_manager=self.secrets_manager)
        try:
            store.initialize({**test_case.variables, **(variables or {})}, test_case.secrets)
        except TestCaseValidationError as e:
            logger.error(f"Test case '{test_case.name}' has invalid variables: {e}")
            return TestResult(
                test_case=test_case,
                status=StepStatus.FAILED,
                duration=time.time() - start_time,
                error=str(e)
            )

        should_skip, reason = evaluate_skip(test_case.skip, store.substitute)
        if should_skip:
            logger.info(f"Skipping test case '{test_case.name}': {reason}")
            return TestResult(
                test_case=test_case,
                status=StepStatus.SKIPPED,
                duration=time.time() - start_time,
                error=self.secrets_manager.mask_text(reason)
            )

        runner = self._create_runner(store, test_case)
        error = ""
        try:
            top_level = runner.execute_steps(test_case.steps, token)
        except ExecutionCancelled as e:
            logger.error(f"Test case '{test_case.name}' cancelled: {e}")
            top_level = []
            error = str(e)

        status, aggregate_error = self._aggregate(top_level, runner.results)
        if error:
            status = StepStatus.FAILED
        else:
            error = aggregate_error

        result = TestResult(
            test_case=test_case,
            status=status,
            step_results=list(runner.results),
            duration=time.time() - start_time,
            error=error
        )
        logger.info(
            f"Test case '{test_case.name}' {status.value}: {result.passed_steps} passed, "
            f"{result.failed_steps} failed, {result.skipped_steps} skipped in {result.duration:.2f}s"
        )
        return result

    def execute_steps(
        self,
        steps: List[Step],
        token: Optional[CancellationToken] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> List[StepResult]:
        """
        Execute a step list in a fresh namespace.

        Returns:
            Every StepResult recorded, nested results included
        """
        store = VariableStore(secrets_manager=self.secrets_manager)
        store.initialize(variables or {})
        runner = StepRunner(self.action_executor, store, self.secrets_manager, silent=self.silent)
        runner.execute_steps(steps, token or CancellationToken())
        return list(runner.results)

    def should_skip(
        self,
        skip: Optional[Union[bool, str]],
        variables: Optional[Dict[str, Any]] = None
    ) -> Tuple[bool, str]:
        """
        Evaluate a step or test-case skip field.

        Returns:
            (should_skip, reason)
        """
        store = VariableStore(initial=variables, secrets_manager=self.secrets_manager)
        return evaluate_skip(skip, store.substitute)

    def _create_runner(self, store: VariableStore, test_case: TestCase) -> StepRunner:
        return StepRunner(
            self.action_executor,
            store,
            self.secrets_manager,
            parallel=test_case.parallel,
            silent=self.silent
        )

    def _aggregate(self, top_level: List[StepResult], recorded: List[StepResult]) -> Tuple[StepStatus, str]:
        """
        Derive a test status.

        FAILED when a top-level failure aborted the run, SKIPPED when every
        recorded result is skipped, PASSED otherwise.
        """
        for result in top_level:
            if is_fatal(result):
                return StepStatus.FAILED, f"step '{result.step.label}' failed: {result.error}"
        if recorded and all(r.status == StepStatus.SKIPPED for r in recorded):
            return StepStatus.SKIPPED, "all steps skipped"
        return StepStatus.PASSED, ""
