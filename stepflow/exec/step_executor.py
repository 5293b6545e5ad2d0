"""
Single action-step execution.

Substitutes a step's arguments, calls the action through the retry executor,
applies expect_error and the response `error` convention, binds the result
variable and builds a masked StepResult.
"""

import logging
import time
from typing import Any, Optional

from ..exceptions import ActionError, ExecutionCancelled, SkipStep
from ..models import Step, StepResult, StepStatus
from ..security.secrets import SecretsManager
from ..variables.store import VariableStore
from ..variables.substitution import stringify
from .cancellation import CancellationToken
from .expectations import validate_expected_error
from .retry import RetryExecutor

logger = logging.getLogger(__name__)


def response_error(output: Any) -> Optional[str]:
    """Error text carried by an action response of the form {"error": "..."}."""
    if isinstance(output, dict):
        error = output.get("error")
        if isinstance(error, str) and error:
            return error
    return None


class StepExecutor:
    """
    Executes plain action steps against a variable store.
    """

    def __init__(
        self,
        action_executor,
        store: VariableStore,
        secrets_manager: Optional[SecretsManager] = None,
        silent: bool = False
    ):
        """
        Initialize step executor.

        Args:
            action_executor: External executor, execute(token, action, args, options, silent)
            store: Variable store of the current run
            secrets_manager: Manager used to mask output and errors
            silent: Ask actions to suppress their own console output
        """
        self.store = store
        self.secrets_manager = secrets_manager or store.secrets_manager
        self.retry_executor = RetryExecutor(action_executor, silent=silent)

    def execute(self, step: Step, token: CancellationToken) -> StepResult:
        """
        Execute one action step.

        Args:
            step: Step with an action (no control block)
            token: Cancellation token

        Returns:
            StepResult with masked output and error
        """
        start_time = time.time()

        args = self.store.substitute_deep(step.args)
        options = self.store.substitute_deep(step.options)

        logger.debug(f"Executing action '{step.action}' for step '{step.label}'")
        outcome = self.retry_executor.execute_with_retry(step, args, options, token)
        error = outcome.error

        bound_value: Any = outcome.output
        if isinstance(error, SkipStep):
            status = StepStatus.SKIPPED
            error_text = str(error) or "skipped by action"
        elif isinstance(error, ExecutionCancelled):
            status = StepStatus.FAILED
            error_text = str(error)
        elif step.expect_error is not None:
            if error is None and response_error(outcome.output):
                error = ActionError(response_error(outcome.output), outcome.output)
            mismatch = validate_expected_error(step.expect_error, error, outcome.output)
            if mismatch is None:
                status = StepStatus.PASSED
                error_text = ""
                # The matched error message is what a result variable observes
                bound_value = str(error)
            else:
                status = StepStatus.FAILED
                error_text = str(mismatch)
        elif error is not None:
            status = StepStatus.FAILED
            error_text = str(error)
        else:
            error_text = response_error(outcome.output) or ""
            status = StepStatus.FAILED if error_text else StepStatus.PASSED

        # A step abandoned by a timed-out group must not bind after it was reported
        if status == StepStatus.PASSED and step.result and not token.cancelled:
            self.store.set(step.result, bound_value)

        # Mask before stringifying: JSON escaping would hide secrets from mask_text
        display = "" if outcome.output is None else stringify(self.secrets_manager.mask_value(outcome.output))
        result = StepResult(
            step=step,
            status=status,
            output=self.secrets_manager.mask_text(display),
            error=self.secrets_manager.mask_text(error_text),
            duration=time.time() - start_time,
            attempts=outcome.attempts
        )

        if result.failed:
            logger.warning(f"Step '{step.label}' failed: {result.error}")
        elif result.skipped:
            logger.info(f"Step '{step.label}' skipped: {result.error}")
        else:
            logger.debug(f"Step '{step.label}' passed in {result.duration:.3f}s")
        return result
