"""
if/for/while interpretation.

Conditions are substituted against the run's variables and handed to the
`control` pseudo-action; bodies run through the runner's recursive
execute_steps, so nested blocks and nested parallel groups behave exactly
like top-level steps.
"""

import logging
import time
from typing import TYPE_CHECKING, Any, List

from ..exceptions import EvaluationError, ExecutionCancelled, RunawayLoopError
from ..models import LoopBlock, Step, StepResult, StepStatus
from ..variables.substitution import stringify

if TYPE_CHECKING:
    from .executor import StepRunner

logger = logging.getLogger(__name__)

CONTROL_ACTION = "control"

DEFAULT_WHILE_MAX_ITERATIONS = 1000


def coerce_bool(value: Any) -> bool:
    """True only for a bool True or the exact string "true"."""
    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value == "true"


def coerce_count(value: Any) -> int:
    """
    Convert a for-loop evaluation result to an iteration count.

    Raises:
        EvaluationError: If the value is not a non-negative integer or
            numeric string
    """
    if isinstance(value, bool):
        raise EvaluationError(f"invalid iteration count: {stringify(value)}")
    if isinstance(value, int):
        count = value
    elif isinstance(value, float) and value.is_integer():
        count = int(value)
    elif isinstance(value, (str, bytes, bytearray)):
        text = stringify(value).strip()
        try:
            count = int(text)
        except ValueError:
            raise EvaluationError(f"invalid iteration count: {text!r}")
    else:
        raise EvaluationError(f"invalid iteration count: {stringify(value)}")

    if count < 0:
        raise EvaluationError(f"iteration count cannot be negative: {count}")
    return count


def is_fatal(result: StepResult) -> bool:
    """A failure that aborts the sequence it belongs to."""
    return result.failed and not result.step.continue_on_failure


class ControlFlowInterpreter:
    """
    Runs control blocks on behalf of a StepRunner.

    Each run_* method returns the block's own StepResult; results of body
    steps are recorded by the runner as they complete.
    """

    def __init__(self, runner: 'StepRunner'):
        self.runner = runner

    def evaluate(self, kind: str, condition: str, token) -> Any:
        """
        Substitute a condition and evaluate it through the control action.

        Raises:
            EvaluationError: If the control action rejects the condition
        """
        substituted = self.runner.store.substitute(condition)
        try:
            return self.runner.action_executor.execute(
                token, CONTROL_ACTION, [kind, substituted], {}, self.runner.silent
            )
        except ExecutionCancelled:
            raise
        except Exception as e:
            raise EvaluationError(str(e)) from e

    def run_if(self, step: Step, token) -> StepResult:
        start_time = time.time()
        block = step.if_block
        try:
            branch_taken = coerce_bool(self.evaluate("if", block.condition, token))
        except EvaluationError as e:
            return self._result(step, StepStatus.FAILED, "", str(e), start_time)

        branch = block.then if branch_taken else block.else_
        label = "then" if branch_taken else "else"
        logger.debug(f"if '{step.label}': condition {branch_taken}, running {label} branch ({len(branch)} steps)")

        failure = self._run_body(branch, token)
        output = f"condition {stringify(branch_taken)}, ran {label} branch"
        if failure is not None:
            return self._result(step, StepStatus.FAILED, output, f"{label} branch failed: {failure.error}", start_time)
        return self._result(step, StepStatus.PASSED, output, "", start_time)

    def run_for(self, step: Step, token) -> StepResult:
        start_time = time.time()
        block = step.for_block
        try:
            count = coerce_count(self.evaluate("for", block.condition, token))
        except EvaluationError as e:
            return self._result(step, StepStatus.FAILED, "", str(e), start_time)

        if block.max_iterations > 0 and count > block.max_iterations:
            logger.warning(
                f"for '{step.label}': {count} iterations clamped to max_iterations={block.max_iterations}"
            )
            count = block.max_iterations

        store = self.runner.store
        for index in range(count):
            store.set("iteration", index + 1)
            store.set("index", index)
            failure = self._run_body(block.steps, token)
            if failure is not None:
                return self._result(
                    step, StepStatus.FAILED, f"{index + 1}/{count} iterations",
                    f"iteration {index + 1} failed: {failure.error}", start_time
                )

        return self._result(step, StepStatus.PASSED, f"{count} iterations", "", start_time)

    def run_while(self, step: Step, token) -> StepResult:
        start_time = time.time()
        block = step.while_block
        max_iterations = block.max_iterations if block.max_iterations > 0 else DEFAULT_WHILE_MAX_ITERATIONS

        store = self.runner.store
        completed = 0
        while True:
            token.raise_if_cancelled()
            store.set("iteration", completed + 1)
            try:
                keep_going = coerce_bool(self.evaluate("while", block.condition, token))
            except EvaluationError as e:
                return self._result(step, StepStatus.FAILED, f"{completed} iterations", str(e), start_time)

            if not keep_going:
                break

            if completed >= max_iterations:
                error = RunawayLoopError(max_iterations)
                logger.error(f"while '{step.label}': {error}")
                return self._result(step, StepStatus.FAILED, f"{completed} iterations", str(error), start_time)

            failure = self._run_body(block.steps, token)
            completed += 1
            if failure is not None:
                return self._result(
                    step, StepStatus.FAILED, f"{completed} iterations",
                    f"iteration {completed} failed: {failure.error}", start_time
                )

        return self._result(step, StepStatus.PASSED, f"{completed} iterations", "", start_time)

    def _run_body(self, steps: List[Step], token):
        """Run a body; return the first fatal result, or None."""
        for result in self.runner.execute_steps(steps, token):
            if is_fatal(result):
                return result
        return None

    def _result(self, step: Step, status: StepStatus, output: str, error: str, start_time: float) -> StepResult:
        mask = self.runner.secrets_manager.mask_text
        return StepResult(
            step=step,
            status=status,
            output=mask(output),
            error=mask(error),
            duration=time.time() - start_time
        )
