"""Stepflow exceptions."""

from typing import Any, List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class TestCaseValidationError(Exception):
    """Raised when a test case or suite file fails validation.

    The loader collects every problem before raising, so the CLI can print
    them all and map the failure to exit code 2.
    """

    __test__ = False  # keep pytest from collecting this class

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2

        messages = []
        for error in errors:
            if error.path:
                messages.append(f"Validation error at {error.path}: {error.message}")
            else:
                messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages))


class StepflowError(Exception):
    """Base class for errors raised while executing steps."""


class EvaluationError(StepflowError):
    """A condition or iteration expression could not be evaluated."""


class ActionError(StepflowError):
    """Error returned by an action.

    Actions may attach the output they produced before failing so that
    reporting and expect_error checks can still see it.
    """

    def __init__(self, message: str, output: Any = None):
        super().__init__(message)
        self.output = output


class RetryExhaustedError(StepflowError):
    """Every retry attempt of a step failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        if last_error is None:
            detail = "retryable response"
        else:
            detail = str(last_error)
        super().__init__(f"step failed after {attempts} attempts: {detail}")


class ExpectationError(StepflowError):
    """An expect_error specification was not satisfied."""


class RunawayLoopError(StepflowError):
    """A while loop exceeded its maximum iteration count."""

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(f"while loop exceeded maximum iterations ({max_iterations})")


class ExecutionCancelled(StepflowError):
    """The run was cancelled or its deadline passed."""


class SkipStep(StepflowError):
    """Raised by an action to report its step as skipped instead of failed."""
