"""
Step runner: the recursive step-list interpreter of one test-case run.

Top-level steps and control-block bodies go through the same
execute_steps entry point. Every StepResult produced during the run is
appended to one ordered result log and mirrored into the step history
variable.
"""

import logging
import threading
from typing import List, Optional

from ..exec.cancellation import CancellationToken
from ..exec.step_executor import StepExecutor
from ..models import ParallelConfig, Step, StepResult, StepStatus
from ..security.secrets import SecretsManager
from ..variables.store import VariableStore
from .control_flow import ControlFlowInterpreter, is_fatal
from .skip import evaluate_skip

logger = logging.getLogger(__name__)


class StepRunner:
    """
    Executes step lists against one variable store.

    Handles:
    - Skip evaluation before anything else runs
    - if/for/while blocks (through ControlFlowInterpreter)
    - Plain actions (through StepExecutor and its retry policy)
    - Parallel groups when a ParallelConfig is enabled
    """

    def __init__(
        self,
        action_executor,
        store: VariableStore,
        secrets_manager: Optional[SecretsManager] = None,
        parallel: Optional[ParallelConfig] = None,
        silent: bool = False
    ):
        """
        Initialize step runner.

        Args:
            action_executor: External executor, execute(token, action, args, options, silent)
            store: Variable store of the run
            secrets_manager: Masks output and history entries
            parallel: Parallel configuration (None or disabled = sequential)
            silent: Forwarded to every action call
        """
        self.action_executor = action_executor
        self.store = store
        self.secrets_manager = secrets_manager or store.secrets_manager
        self.parallel = parallel
        self.silent = silent

        self.step_executor = StepExecutor(action_executor, store, self.secrets_manager, silent=silent)
        self.control_flow = ControlFlowInterpreter(self)

        self.results: List[StepResult] = []
        self._results_lock = threading.Lock()
        self._scheduler = None

    @property
    def parallel_enabled(self) -> bool:
        return self.parallel is not None and self.parallel.enabled

    def execute_steps(self, steps: List[Step], token: CancellationToken) -> List[StepResult]:
        """
        Execute a step list.

        Stops at the first failure of a step without continue_on_failure.

        Args:
            steps: Steps to run in order
            token: Cancellation token, checked between steps

        Returns:
            Results of the listed steps themselves (nested results are only
            in the run's result log)

        Raises:
            ExecutionCancelled: If the token is cancelled between steps
        """
        if self.parallel_enabled and len(steps) > 1:
            return self._get_scheduler().execute_parallel(steps, self.parallel, token)

        results: List[StepResult] = []
        for step in steps:
            token.raise_if_cancelled()
            result = self.execute_step(step, token)
            results.append(result)
            if is_fatal(result):
                logger.error(f"Step '{step.label}' failed, aborting remaining {len(steps) - len(results)} step(s)")
                break
        return results

    def execute_step(self, step: Step, token: CancellationToken, record: bool = True) -> StepResult:
        """
        Execute a single step of any kind.

        Args:
            step: Step to run
            token: Cancellation token
            record: Append the result to the result log immediately

        Returns:
            The step's own StepResult
        """
        should_skip, reason = evaluate_skip(step.skip, self.store.substitute)
        if should_skip:
            logger.info(f"Skipping step '{step.label}': {reason}")
            result = StepResult(step=step, status=StepStatus.SKIPPED, error=self.secrets_manager.mask_text(reason))
        elif step.if_block is not None:
            result = self.control_flow.run_if(step, token)
        elif step.for_block is not None:
            result = self.control_flow.run_for(step, token)
        elif step.while_block is not None:
            result = self.control_flow.run_while(step, token)
        else:
            logger.info(f"Running step '{step.label}'")
            result = self.step_executor.execute(step, token)

        if record:
            self.record(result)
        return result

    def record(self, result: StepResult) -> None:
        """Append a result to the log and the step history variable."""
        with self._results_lock:
            self.results.append(result)
            self.store.append_history(result.to_history_entry())

    def _get_scheduler(self):
        if self._scheduler is None:
            from .scheduler import ParallelScheduler
            self._scheduler = ParallelScheduler(self)
        return self._scheduler
